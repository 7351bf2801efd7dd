"""Repo entrypoint.

Keep this file tiny so `python main.py` works, while the real
implementation lives in the `crowdplay` package.
"""

from crowdplay.main import main


if __name__ == "__main__":
    raise SystemExit(main())
