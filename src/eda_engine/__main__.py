"""Package entry point.

Preferred invocation is via the installed console script:

    eda-engine ...

For convenience we also support:

    python -m eda_engine ...
"""

from __future__ import annotations

from .cli import app


def main() -> None:
    """Entry point used by `python -m eda_engine`."""

    app()


if __name__ == "__main__":
    main()
