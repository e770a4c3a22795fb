"""
Entry point shim.

The server lives in the ``ble_proximity_server`` package with the
``ble-proximity-server`` console script; this file keeps ``python main.py``
working by forwarding to ``ble_proximity_server.cli:main``.
"""

import sys

from ble_proximity_server.cli import main as _cli_main


def main():
    return _cli_main()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
