from __future__ import annotations

from tandem_sync.cli import main

if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
