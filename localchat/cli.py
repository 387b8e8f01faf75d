"""CLI entry point for localchat.

Terminal chat against a locally supervised llama-server. The model file is
fetched from the Hugging Face Hub on first use, the backend is launched on
the first message and stopped on exit.

Entry point:
    localchat chat <repo_id> <filename> [--models-dir DIR]
    localchat download <repo_id> <filename> [--models-dir DIR]

In a chat, Ctrl-C cancels the reply being generated, Ctrl-D exits.
"""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from typing import Awaitable, Callable, Iterator, Optional

from dotenv import load_dotenv

from localchat.backends import BootEvent, BootEventKind, progress_reporter
from localchat.config import EngineSettings, get_hf_token, get_models_dir
from localchat.errors import DownloadError, LocalChatError
from localchat.models import ModelReference
from localchat.session import ChatEvent, ChatEventKind, ChatSession, MessageStatus
from localchat.storage import HuggingFaceModelStore
from localchat.supervisor import BackendSupervisor

logger = logging.getLogger(__name__)

PROMPT = "> "
COMMANDS_HELP = "Commands: /title, /quit (Ctrl-C cancels a reply, Ctrl-D exits)"

ReadLine = Callable[[], Awaitable[str]]


# ─────────────────────────────────────────────────────────────────────
# ARGUMENT PARSING
# ─────────────────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="localchat",
        description="Chat with a local GGUF model served by llama-server.",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )
    sub = parser.add_subparsers(dest="command")

    for name, help_text in (
        ("chat", "Start an interactive chat"),
        ("download", "Download a model file without chatting"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("repo_id", help="Hub repository, e.g. Qwen/Qwen2.5-0.5B-Instruct-GGUF")
        p.add_argument("filename", help="GGUF file inside the repository")
        p.add_argument("--revision", default="main", help="Hub revision (default: main)")
        p.add_argument("--models-dir", default=None, help="Local model directory (default: LOCALCHAT_MODELS_DIR)")
        if name == "chat":
            p.add_argument("--system-prompt", default=None, help="Override the system prompt")

    return parser


def _model_from_args(args: argparse.Namespace) -> ModelReference:
    directory = args.models_dir or get_models_dir()
    return ModelReference.from_hub(args.repo_id, args.filename, directory, revision=args.revision)


# ─────────────────────────────────────────────────────────────────────
# OUTPUT
# ─────────────────────────────────────────────────────────────────────


def _print_boot_event(event: BootEvent) -> None:
    if event.kind is BootEventKind.PROGRESSED:
        print(f"\r{event.stage} {event.percent}%", end="", file=sys.stderr, flush=True)
        if event.percent == 100:
            print(file=sys.stderr)
    else:
        logger.debug(event.line)


def _print_chat_event(event: ChatEvent) -> None:
    if event.kind is ChatEventKind.UPDATED and event.fragment:
        print(event.fragment, end="", flush=True)
    elif event.kind is ChatEventKind.ERROR:
        print(f"\nError: {event.error}", file=sys.stderr)


@contextlib.contextmanager
def _cancel_on_interrupt(session: ChatSession) -> Iterator[None]:
    """Route Ctrl-C to session.cancel() while a reply is streaming."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.cancel)
    except (NotImplementedError, RuntimeError):
        # No loop signal handlers on this platform; Ctrl-C exits instead
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


async def _read_stdin() -> str:
    return await asyncio.to_thread(input, PROMPT)


# ─────────────────────────────────────────────────────────────────────
# COMMANDS
# ─────────────────────────────────────────────────────────────────────


async def chat_loop(session: ChatSession, read_line: ReadLine = _read_stdin) -> int:
    """Read-submit-print until EOF or /quit. Returns exit code."""
    print(COMMANDS_HELP, file=sys.stderr)
    while True:
        try:
            text = (await read_line()).strip()
        except EOFError:
            print(file=sys.stderr)
            return 0

        if not text:
            continue
        if text in ("/quit", "/exit"):
            return 0

        if text == "/title":
            try:
                with _cancel_on_interrupt(session):
                    title = await session.suggest_title()
            except LocalChatError as e:
                logger.debug(f"Title request failed: {e}")
                print(f"Error: {e}", file=sys.stderr)
                continue
            print(title)
            continue

        with _cancel_on_interrupt(session):
            reply = await session.submit(text)
        if reply.status is MessageStatus.INTERRUPTED:
            print(" [interrupted]")
        elif reply.status is MessageStatus.COMPLETE:
            print()


async def _cmd_chat(model: ModelReference, system_prompt: Optional[str] = None) -> int:
    """Interactive chat. Returns exit code."""
    settings = EngineSettings.from_env()
    if system_prompt:
        settings = settings.model_copy(update={"system_prompt": system_prompt})

    store = HuggingFaceModelStore(token=get_hf_token())
    async with BackendSupervisor(model, settings, store=store, on_event=_print_boot_event) as supervisor:
        session = ChatSession.from_settings(supervisor, settings)
        session.subscribe(_print_chat_event)
        return await chat_loop(session)


async def _cmd_download(model: ModelReference) -> int:
    """Download the model file. Returns exit code."""
    store = HuggingFaceModelStore(token=get_hf_token())
    report = progress_reporter("Downloading model...", _print_boot_event)
    try:
        async for progress in store.ensure_present(model):
            report(progress)
    except DownloadError as e:
        print(f"\nError: {e}", file=sys.stderr)
        return 1
    print(f"\n{model.local_path}", file=sys.stderr)
    return 0


# ─────────────────────────────────────────────────────────────────────
# ENTRY POINT
# ─────────────────────────────────────────────────────────────────────


def main():
    parser = _build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Logging
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s %(message)s", stream=sys.stderr)

    # Load env
    load_dotenv()

    model = _model_from_args(args)

    # Dispatch
    try:
        if args.command == "chat":
            code = asyncio.run(_cmd_chat(model, system_prompt=args.system_prompt))
        elif args.command == "download":
            code = asyncio.run(_cmd_download(model))
        else:
            parser.print_help()
            code = 1
    except KeyboardInterrupt:
        code = 130

    sys.exit(code)


if __name__ == "__main__":
    main()
