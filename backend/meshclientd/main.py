import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from meshclientd import lifecycle
from meshclientd.config import default_config_path, resolve_device_name
from meshclientd.errors import ClientError
from meshclientd.logging import setup_logging

log = logging.getLogger("meshclientd.main")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INIT_ERROR = 2


def _install_signal_handlers(handle: lifecycle.ClientHandle) -> None:
    def _handler(signum, _frame):
        try:
            sig_name = signal.Signals(signum).name
        except ValueError:
            sig_name = str(signum)
        log.info("shutdown_signal:%s", sig_name)
        lifecycle.stop(handle)

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, _handler)


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="meshclientd", description="Run the mesh network client until stopped.")
    ap.add_argument("--config", default=None, help="agent config file (default: <config dir>/netbird.cfg)")
    ap.add_argument("--device-name", default=None, help="device name announced to peers")
    ap.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    setup_logging(args.log_level)

    config_path = args.config or default_config_path()
    device_name = resolve_device_name(args.device_name)

    try:
        handle = lifecycle.init(config_path, device_name)
    except ClientError as e:
        log.error("init_failed: %s", e.message, extra={"kind": e.kind})
        return EXIT_INIT_ERROR

    _install_signal_handlers(handle)

    outcome = {"code": EXIT_FAILED}

    def _run() -> None:
        try:
            lifecycle.run(handle)
            outcome["code"] = EXIT_OK
        except ClientError as e:
            log.error("run_failed: %s", e.message, extra={"kind": e.kind})

    # run() blocks; keep the main thread free to take signals.
    runner = threading.Thread(target=_run, name="meshclientd-run")
    runner.start()
    while runner.is_alive():
        runner.join(timeout=0.5)

    return outcome["code"]


if __name__ == "__main__":
    sys.exit(main())
