"""Allow ``python -m promptblocks``."""

from promptblocks.cli import main

raise SystemExit(main())
