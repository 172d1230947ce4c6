"""Test that the project setup is working correctly."""

import limit_order_agent


def test_version() -> None:
    """Test that version is defined."""
    assert limit_order_agent.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from limit_order_agent import advisory
    from limit_order_agent import chain
    from limit_order_agent import custody
    from limit_order_agent import execution
    from limit_order_agent import monitor
    from limit_order_agent import storage

    # Just verify imports work
    assert advisory is not None
    assert chain is not None
    assert custody is not None
    assert execution is not None
    assert monitor is not None
    assert storage is not None


def test_storage_exports_resolve() -> None:
    """Test that every name the storage package exports exists."""
    from limit_order_agent import storage
    from limit_order_agent.storage import database

    for name in storage.__all__:
        assert hasattr(storage, name), name
    assert storage.build_engine is database.build_engine
    assert storage.normalize_database_url is database.normalize_database_url


def test_runtime_modules_import() -> None:
    """Test that the modules wired at startup import cleanly."""
    import importlib

    for name in (
        "limit_order_agent.agent",
        "limit_order_agent.service",
        "limit_order_agent.monitor.scheduler",
        "limit_order_agent.custody.wallets",
        "limit_order_agent.__main__",
    ):
        assert importlib.import_module(name) is not None
