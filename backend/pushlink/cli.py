"""Command line entry point.

``pushlink serve`` runs the background service and ``pushlink share`` hands a
push to it; the other commands act as a popup that renders to the terminal.
"""
import argparse
import asyncio
import logging
import sys
from typing import List

import httpx

from . import __version__
from .config import settings
from .popup import PopupController, SECTION_LOADING, SECTION_LOGIN, format_timestamp
from .schemas import Push, SessionSnapshot, SharePush
from .services.messaging import BackgroundClient
from .services.store import ConfigStore

logger = logging.getLogger(__name__)


class TerminalView:
    """Renders the popup as plain text."""

    def __init__(self, quiet: bool = False, out=None):
        self.quiet = quiet
        self.out = out or sys.stdout

    def _print(self, text: str = ""):
        print(text, file=self.out)

    def show_section(self, section: str):
        if section == SECTION_LOGIN:
            self._print("Not logged in. Run 'pushlink login <access-token>'.")
        elif section == SECTION_LOADING and not self.quiet:
            self._print("Loading...")

    def render_session(self, snapshot: SessionSnapshot):
        if self.quiet:
            return
        if snapshot.user_info:
            self._print(f"Logged in as {snapshot.user_info.display_name}")
        self._print(f"This device: {snapshot.device_nickname} (auto-open links: {'on' if snapshot.auto_open_links else 'off'})")
        self._print("Devices:")
        for device in snapshot.devices:
            self._print(f"  {device.id}  {device.label}")

    def render_pushes(self, pushes: List[Push]):
        if self.quiet:
            return
        self._print("Recent pushes:")
        if not pushes:
            self._print("  No recent pushes")
            return
        for push in pushes:
            age = f"[{format_timestamp(push.created_at)}] " if push.created_at else ""
            self._print(f"  {age}{push.title or ''}")
            if push.url:
                self._print(f"    {push.url}")
            if push.body:
                self._print(f"    {push.body}")

    def show_status(self, message: str, kind: str):
        stream = sys.stderr if kind == "error" else self.out
        print(message, file=stream)

    def scroll_to_recent_pushes(self):
        # Pushes are printed last, so they are already in view
        pass


async def _run_popup(args) -> int:
    store = await ConfigStore.open()
    background = BackgroundClient()
    controller = PopupController(TerminalView(quiet=args.command != "popup"), background, store)

    try:
        if args.command == "login":
            return 0 if await controller.submit_credential(args.token, args.nickname or "") else 1

        await controller.activate()
        if not controller.initialized:
            return 1

        if args.command == "popup":
            if args.watch:
                logger.info("Watching for updates, press Ctrl-C to stop")
                await background.listen(controller.handle_message)
            return 0
        if args.command == "logout":
            await controller.logout()
            return 0
        if args.command == "push":
            ok = await controller.send_push(
                args.type,
                title=args.title or "",
                body=args.body or "",
                url=args.url or "",
                target_device=args.device,
            )
            return 0 if ok else 1
        if args.command == "settings":
            ok = True
            if args.auto_open_links is not None:
                await controller.set_auto_open_links(args.auto_open_links == "on")
            if args.nickname is not None:
                ok = await controller.update_nickname(args.nickname)
            return 0 if ok else 1
        return 0
    finally:
        controller.deactivate()
        await store.close()


async def _share(args) -> int:
    """Ask the background to push; it reports the outcome as a desktop notification."""
    message = SharePush(target=args.target, url=args.url, text=args.text, page_title=args.page_title)
    try:
        result = await BackgroundClient().send(message)
    except httpx.HTTPError as e:
        logger.error(f"Background service not reachable: {e}")
        return 1
    return 0 if result.get("ok") else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pushlink", description="Push notification client")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the background service")
    serve.add_argument("--host", default=settings.background_host)
    serve.add_argument("--port", type=int, default=settings.background_port)

    popup = subparsers.add_parser("popup", help="Show the session and recent pushes")
    popup.add_argument("--watch", action="store_true", help="Keep running and print updates")

    login = subparsers.add_parser("login", help="Log in with an access token")
    login.add_argument("token")
    login.add_argument("--nickname", help="Nickname for this device (default: Chrome)")

    subparsers.add_parser("logout", help="Forget the access token")

    push = subparsers.add_parser("push", help="Send a note or a link")
    push.add_argument("type", choices=["note", "link"])
    push.add_argument("--title")
    push.add_argument("--body")
    push.add_argument("--url")
    push.add_argument("--device", help="Target device iden (default: all devices)")

    settings_parser = subparsers.add_parser("settings", help="Change local settings")
    settings_parser.add_argument("--auto-open-links", choices=["on", "off"])
    settings_parser.add_argument("--nickname")

    share = subparsers.add_parser("share", help="Push a link, page, selection or image through the background service")
    share.add_argument("target", choices=["link", "page", "selection", "image"])
    share.add_argument("--url", help="Link, page or image URL")
    share.add_argument("--text", help="Selected text (for selection)")
    share.add_argument("--page-title", help="Title of the page it came from")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command == "serve":
        import uvicorn
        from .main import app

        uvicorn.run(app, host=args.host, port=args.port)
        return 0
    if args.command == "share":
        return asyncio.run(_share(args))

    try:
        return asyncio.run(_run_popup(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
