"""`python -m pilot_bridge` 入口。"""

from __future__ import annotations

from pilot_bridge.cli.main import main

raise SystemExit(main())
