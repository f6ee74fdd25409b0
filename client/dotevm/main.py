"""Entry point: logging setup, then the evm command group."""

import logging
import os
import sys

from dotevm.cli import cli
from dotevm.config import get_log_path


def _setup_logging(debug: bool = False) -> None:
    """Configure logging to a file in the config dir (DEBUG) and to stderr (WARNING, or DEBUG)."""
    log_file = get_log_path()
    log_file.parent.mkdir(parents=True, exist_ok=True)
    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    root = logging.getLogger("dotevm")
    root.setLevel(logging.DEBUG)
    root.handlers.clear()
    try:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(fmt)
        root.addHandler(fh)
    except OSError as e:
        print(f"Could not open log file {log_file}: {e}", file=sys.stderr)
    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(logging.DEBUG if debug else logging.WARNING)
    ch.setFormatter(fmt)
    root.addHandler(ch)
    root.debug("Logging to %s", log_file)


def main() -> None:
    """Console script entry point (evm)."""
    debug = "-d" in sys.argv[1:] or "--debug" in sys.argv[1:] or os.environ.get("EVM_DEBUG") == "1"
    _setup_logging(debug)
    logging.getLogger("dotevm.main").debug("evm %s", " ".join(sys.argv[1:]))
    cli(prog_name="evm")


if __name__ == "__main__":
    main()
