"""
Event-entrance scanner.

    python -m qr_scanner login <username>
    python -m qr_scanner scan [--event NAME] [--local]
    python -m qr_scanner logout
"""
import argparse
import asyncio
import getpass
import logging
import sys

from backend.config import LOG_LEVEL, SCANNER_API_URL
from database.db import create_tables
from qr_scanner.camera import CameraAcquirer
from qr_scanner.recorder import ApiAttendanceRecorder, LocalAttendanceRecorder, ScanOutcome, SessionStore
from qr_scanner.session import ScanSession, ScanState

logger = logging.getLogger("qr_scanner")

OUTCOME_PREFIX = {
    "recorded": "[OK]",
    "duplicate_today": "[ALREADY LOGGED]",
    "not_registered": "[NOT REGISTERED]",
    "failed": "[FAILED]",
}


def _print_outcome(outcome: ScanOutcome) -> None:
    print(f"{OUTCOME_PREFIX.get(outcome.outcome, '[?]')} {outcome.message}", flush=True)


def _print_state(session: ScanSession) -> None:
    if session.state is ScanState.SCANNING:
        print("Scanning for QR codes... (Ctrl+C to stop)", flush=True)
    elif session.state is ScanState.ERROR:
        print(f"Scanner error: {session.error_message}", flush=True)


async def run_scanner(session: ScanSession) -> None:
    try:
        await session.start()
        while not session.closed:
            if session.state is ScanState.ERROR:
                answer = await asyncio.to_thread(input, "Press Enter to retry, or type q to quit: ")
                if answer.strip().lower() == "q":
                    break
                await session.retry()
                continue
            await asyncio.sleep(0.2)
    finally:
        session.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="qr_scanner", description="QR attendance scanner")
    parser.add_argument("--api", default=SCANNER_API_URL, help="API base URL")
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="start an admin session for the scanner")
    login.add_argument("username")

    sub.add_parser("logout", help="end the stored admin session")

    scan = sub.add_parser("scan", help="open the camera and log attendance")
    scan.add_argument("--event", default=None, help="event name stored with each entry")
    scan.add_argument(
        "--local",
        action="store_true",
        help="write to the local database instead of calling the API",
    )

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = SessionStore()
    api = ApiAttendanceRecorder(store, base_url=args.api, event_name=getattr(args, "event", None))

    if args.command == "login":
        password = getpass.getpass("Password: ")
        try:
            body = api.login(args.username, password)
        except PermissionError as exc:
            print(f"Login failed: {exc}", file=sys.stderr)
            return 1
        print(f"Logged in as {body['username']}; session valid for {body['expires_in'] // 3600}h.")
        return 0

    if args.command == "logout":
        api.logout()
        print("Logged out.")
        return 0

    if args.local:
        create_tables()
        recorder = LocalAttendanceRecorder(args.event)
    elif store.get():
        recorder = api
    else:
        print("Not logged in. Run: python -m qr_scanner login <username>", file=sys.stderr)
        return 1

    session = ScanSession(
        CameraAcquirer(),
        recorder.record,
        on_state=_print_state,
        on_outcome=_print_outcome,
    )
    try:
        asyncio.run(run_scanner(session))
    except KeyboardInterrupt:
        logger.info("Scanner stopped by operator")
    return 0


if __name__ == "__main__":
    sys.exit(main())
