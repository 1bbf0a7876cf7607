from __future__ import annotations

from issuesmith.cli import main


if __name__ == "__main__":
    main()
