from __future__ import annotations

from ralph_loop.commands import main

if __name__ == "__main__":
    raise SystemExit(main())
