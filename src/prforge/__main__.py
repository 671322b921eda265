from __future__ import annotations

from prforge.cli import main


if __name__ == "__main__":
    main()
