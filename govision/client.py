#!/usr/bin/env python3
"""
GoVision Command-line Client
============================

Usage:
    # Create an account, then log in (password is prompted)
    govision register you@example.com
    govision login you@example.com

    # Upload images, wait for the detections, save annotated PNGs
    govision upload cat.png dog.jpg --out results/

    # Against another deployment, without automatic export
    govision --url https://api.example.com/v1 upload *.png --no-export

    govision whoami
    govision logout
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path

from govision.config import ClientConfig
from govision.errors import GoVisionError, ServerError, SessionExpired, TransportError, ValidationError
from govision.jobs import FAILED
from govision.session import DashboardSession

log = logging.getLogger("govision")


def _print_table(session: DashboardSession) -> None:
    table = session.table()
    if table.empty:
        print("No jobs.")
    else:
        print(table.to_string(index=False))


async def _cmd_login(session: DashboardSession, args) -> int:
    password = args.password or getpass.getpass("Password: ")
    await session.login(args.email, password)
    print(f"Logged in as {session.credentials.identity()}")
    return 0


async def _cmd_register(session: DashboardSession, args) -> int:
    password = args.password or getpass.getpass("Password: ")
    confirm = args.password or getpass.getpass("Confirm password: ")
    await session.register(args.email, password, confirm)
    print("Account created. Log in with: govision login", args.email.strip())
    return 0


async def _cmd_logout(session: DashboardSession, args) -> int:
    await session.logout()
    print("Logged out.")
    return 0


async def _cmd_whoami(session: DashboardSession, args) -> int:
    if not session.logged_in:
        print("Not logged in.")
        return 1
    print(session.credentials.identity() or "(unknown)")
    return 0


async def _cmd_upload(session: DashboardSession, args) -> int:
    missing = [p for p in args.files if not Path(p).is_file()]
    for p in missing:
        print(f"File not found: {p}")
    accepted = session.select(p for p in args.files if p not in missing)
    if accepted == 0:
        print("Nothing to upload (allowed: JPEG, PNG, GIF up to "
              f"{session.config.max_upload_mb} MB).")
        return 1

    print(f"Uploading {accepted} file(s) ...")
    try:
        await session.upload_all()
        await session.wait_until_idle()
    finally:
        await session.close()

    _print_table(session)
    failed = [job for job in session.store.entries() if job.status == FAILED]
    return 1 if failed else 0


COMMANDS = {
    "login": _cmd_login,
    "register": _cmd_register,
    "logout": _cmd_logout,
    "whoami": _cmd_whoami,
    "upload": _cmd_upload,
}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="govision", description="GoVision API Client")
    p.add_argument("--url", help="API base URL (default: $GOVISION_API_BASE or http://localhost:8080/v1)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    for name in ("login", "register"):
        sp = sub.add_parser(name)
        sp.add_argument("email")
        sp.add_argument("--password", help="Skip the prompt (not recommended)")

    sub.add_parser("logout")
    sub.add_parser("whoami")

    up = sub.add_parser("upload", help="Upload images and wait for results")
    up.add_argument("files", nargs="+", help="Image files (JPEG, PNG, GIF)")
    up.add_argument("--concurrency", type=int, help="Parallel uploads (default 3)")
    up.add_argument("--out", help="Directory for annotated PNGs")
    up.add_argument("--no-export", action="store_true", help="Do not save annotated PNGs")
    up.add_argument("--interval", type=int, help="Polling interval in ms (default 3000)")
    return p


def config_from_args(args) -> ClientConfig:
    cfg = ClientConfig.from_env()
    if args.url:
        cfg.api_base = args.url.rstrip("/")
    if getattr(args, "concurrency", None):
        cfg.upload_concurrency = args.concurrency
    if getattr(args, "out", None):
        cfg.output_dir = Path(args.out)
    if getattr(args, "no_export", False):
        cfg.auto_export = False
    if getattr(args, "interval", None):
        cfg.poll_interval_ms = args.interval
    return cfg


async def run(args) -> int:
    session = DashboardSession(config_from_args(args))
    return await COMMANDS[args.command](session, args)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        return asyncio.run(run(args))
    except SessionExpired:
        print("Session expired. Log in again with: govision login <email>")
    except (ValidationError, ServerError) as e:
        print(f"Error: {e}")
    except TransportError as e:
        print(f"Cannot reach {args.url or 'the API'}: {e}")
    except GoVisionError as e:
        log.error("Unexpected failure: %s", e, exc_info=True)
    return 1


if __name__ == "__main__":
    sys.exit(main())
