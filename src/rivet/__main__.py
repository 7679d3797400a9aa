from __future__ import annotations

from rivet.cli import main

raise SystemExit(main())
