"""Test that the project setup is working correctly."""

import cow_settlement_sync


def test_version() -> None:
    """Test that version is defined."""
    assert cow_settlement_sync.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from cow_settlement_sync import chain
    from cow_settlement_sync import enrichment
    from cow_settlement_sync import storage
    from cow_settlement_sync import sync

    # Just verify imports work
    assert chain is not None
    assert enrichment is not None
    assert storage is not None
    assert sync is not None
