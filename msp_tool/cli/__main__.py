"""``python -m msp_tool.cli`` and the ``msp-tool`` console script."""

import sys

from .main import main


def _run() -> None:
    sys.exit(main(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - entry point
    _run()
