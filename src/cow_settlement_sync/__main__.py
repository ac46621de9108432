"""Allow running the sync as ``python -m cow_settlement_sync``."""

from cow_settlement_sync.cli import main

raise SystemExit(main())
