"""Basic tests to verify project setup."""


def test_import_kina():
    """Test that kina package can be imported."""
    import kina

    assert kina.__version__ == "0.1.0"


def test_import_cli():
    """Test that CLI module can be imported."""
    from kina import cli

    assert cli.app is not None


def test_import_providers():
    """Test that the provider implementations are exported."""
    from kina.providers import AppleContainerProvider, Provider

    assert issubclass(AppleContainerProvider, Provider)


def test_import_models():
    """Test that models module can be imported."""
    from kina import models

    assert models.ClusterSpec is not None
