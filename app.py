from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import sys
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import uvicorn

from erpconsole.core.capabilities import available_roles, roles_with
from erpconsole.core.config import ConfigFsPaths, ConfigManager, ConsoleConfig
from erpconsole.core.context import ConsoleContext
from erpconsole.core.errors import ConfigError
from erpconsole.core.logger import level_from_name, setup_logging
from erpconsole.core.session import AuthResult, OTPStep
from erpconsole.web.api import create_app

Command = Callable[[ConsoleContext, argparse.Namespace], Awaitable[int]]


def _print_result(res: AuthResult, *, success: str = "OK") -> int:
    if res.ok:
        print(res.message or success)
        return 0
    print(res.message or "Failed.", file=sys.stderr)
    if res.attempts_left is not None:
        print(f"Attempts left: {res.attempts_left}", file=sys.stderr)
    return 1


def _describe(ctx: ConsoleContext) -> Dict[str, Any]:
    snap = ctx.session.snapshot().to_public()
    info = ctx.session.role_info
    if info is not None:
        snap["role_name"] = info.display_name
        snap["capabilities"] = sorted(k for k, v in ctx.session.capabilities.items() if v)
    return snap


def _parse_updates(pairs: list[str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"expected key=value, got: {pair}")
        out[key.strip()] = value
    return out


async def _ask(prompt: str) -> str:
    # stdin is read off the loop so the OTP countdown keeps ticking
    return (await asyncio.to_thread(input, prompt)).strip()


# ---------- commands ----------
async def cmd_sign_up(ctx: ConsoleContext, args: argparse.Namespace) -> int:
    return _print_result(await ctx.session.sign_up(args.email, args.password, args.name, args.phone))


async def cmd_sign_in(ctx: ConsoleContext, args: argparse.Namespace) -> int:
    res = await ctx.session.sign_in(args.email, args.password, branch_id=args.branch)
    code = _print_result(res, success="Signed in.")
    if res.ok:
        print(json.dumps(_describe(ctx), indent=2))
    return code


async def cmd_reset_password(ctx: ConsoleContext, args: argparse.Namespace) -> int:
    return _print_result(await ctx.session.reset_password(args.email))


async def cmd_otp(ctx: ConsoleContext, args: argparse.Namespace) -> int:
    flow = ctx.otp_flow()
    try:
        res = await flow.send_otp(args.phone)
        if not res.ok:
            return _print_result(res)
        print(res.message)
        while flow.step == OTPStep.AWAITING_CODE:
            answer = await _ask(f"Code ({flow.countdown_text} left; r=resend, c=change phone, q=quit): ")
            if answer == "q":
                return 1
            if answer == "r":
                _print_result(await flow.resend_otp())
                continue
            if answer == "c":
                flow.change_phone()
                res = await flow.send_otp(await _ask("Phone: "))
                if not res.ok:
                    _print_result(res)
                    return 1
                continue
            flow.enter_code(answer)
            if flow.expired:
                print("The code has expired. Type r to resend.", file=sys.stderr)
                continue
            res = await flow.verify()
            if res.ok:
                print("Signed in.")
                print(json.dumps(_describe(ctx), indent=2))
                return 0
            _print_result(res)
        return 1
    finally:
        flow.close()


async def cmd_whoami(ctx: ConsoleContext, args: argparse.Namespace) -> int:
    print(json.dumps(_describe(ctx), indent=2))
    return 0 if ctx.session.is_authenticated else 1


async def cmd_refresh(ctx: ConsoleContext, args: argparse.Namespace) -> int:
    return _print_result(await ctx.session.refresh_token(), success="Session refreshed.")


async def cmd_update_profile(ctx: ConsoleContext, args: argparse.Namespace) -> int:
    try:
        updates = _parse_updates(args.set)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 2
    return _print_result(await ctx.session.update_profile(updates), success="Profile updated.")


async def cmd_sign_out(ctx: ConsoleContext, args: argparse.Namespace) -> int:
    return _print_result(await ctx.session.sign_out(), success="Signed out.")


COMMANDS: Dict[str, Command] = {
    "sign-up": cmd_sign_up,
    "sign-in": cmd_sign_in,
    "reset-password": cmd_reset_password,
    "otp": cmd_otp,
    "whoami": cmd_whoami,
    "refresh": cmd_refresh,
    "update-profile": cmd_update_profile,
    "sign-out": cmd_sign_out,
}


def print_roles() -> int:
    for info in available_roles():
        print(f"{info.level} | {info.role.value:12s} | {info.display_name} - {info.description}")
    return 0


def print_capability(capability: str) -> int:
    roles = roles_with(capability)
    if not roles:
        print(f"Unknown capability: {capability}", file=sys.stderr)
        return 1
    print(", ".join(r.value for r in roles))
    return 0


async def _run(command: Command, args: argparse.Namespace, cfg: ConsoleConfig, fs: ConfigFsPaths, logger: logging.Logger) -> int:
    async with ConsoleContext(cfg, fs=fs, logger=logger) as ctx:
        return await command(ctx, args)


def serve(cfg: ConsoleConfig, fs: ConfigFsPaths, logger: logging.Logger, host: Optional[str], port: Optional[int]) -> int:
    ctx = ConsoleContext(cfg, fs=fs, logger=logger)
    app = create_app(ctx, logger=logger.getChild("web"))
    uvicorn.run(app, host=host or cfg.web.bind_host, port=port or cfg.web.port, log_level="info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="ERP console: sign-in, OTP and session tools")
    ap.add_argument("--root", default=".", help="Directory holding config/, secure/ and logs/.")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("sign-up", help="Create an account and send the verification email.")
    p.add_argument("--email", required=True)
    p.add_argument("--name", required=True)
    p.add_argument("--phone")

    p = sub.add_parser("sign-in", help="Sign in with email and password.")
    p.add_argument("--email", required=True)
    p.add_argument("--branch", help="Register this branch id with the backend on sign-in.")

    p = sub.add_parser("reset-password", help="Send a password reset email.")
    p.add_argument("--email", required=True)

    p = sub.add_parser("otp", help="Sign in with a one-time code sent to a phone.")
    p.add_argument("--phone", required=True)

    sub.add_parser("whoami", help="Show the current session.")
    sub.add_parser("refresh", help="Request a new session token.")

    p = sub.add_parser("update-profile", help="Update profile fields, e.g. --set displayName=Rahim")
    p.add_argument("--set", action="append", default=[], metavar="KEY=VALUE", required=True)

    sub.add_parser("sign-out", help="Clear the session on this device.")

    p = sub.add_parser("roles", help="List roles, or the roles holding a capability.")
    p.add_argument("--capability")

    sub.add_parser("config", help="Print the effective configuration.")

    p = sub.add_parser("serve", help="Run the local web API.")
    p.add_argument("--host")
    p.add_argument("--port", type=int)
    return ap


def _load_config(root: str) -> Tuple[ConfigManager, ConsoleConfig, ConfigFsPaths]:
    fs = ConfigFsPaths(root)
    mgr = ConfigManager(fs=fs)
    return mgr, mgr.load(), fs


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "roles":
        return print_capability(args.capability) if args.capability else print_roles()

    try:
        mgr, cfg, fs = _load_config(args.root)
    except ConfigError as e:
        print(e.user_message, file=sys.stderr)
        return 2
    logger = setup_logging(fs.resolve(cfg.logging.log_dir), level=level_from_name(cfg.logging.level))

    if args.command == "config":
        print(json.dumps(mgr.public_view(), indent=2))
        return 0

    if args.command in ("sign-up", "sign-in"):
        args.password = getpass.getpass("Password: ")

    try:
        if args.command == "serve":
            return serve(cfg, fs, logger, args.host, args.port)
        return asyncio.run(_run(COMMANDS[args.command], args, cfg, fs, logger))
    except ConfigError as e:
        print(e.user_message, file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
