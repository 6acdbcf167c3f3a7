from __future__ import annotations

import argparse
import getpass
import logging
import os
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from dialogic.adapters.gateway import LOCAL_PROVIDERS, ProviderGateway
from dialogic.adapters.llm_base import PROVIDERS
from dialogic.artifacts.report_writer import render_report, write_report
from dialogic.config import Settings, load_settings
from dialogic.models import ScenarioState, UserProfile
from dialogic.pipeline_scenario import ScenarioPipeline, TurnOutcome, TurnRejected
from dialogic.store import JsonStore
from dialogic.utils.time import utc_timestamp

logger = logging.getLogger("dialogic")

HELP_TEXT = (
    "Type 'exit' or 'quit' to leave. Ctrl+C while the tutor is thinking cancels the response.\n"
    "Commands: /reset (new scenario), /report, /export [PATH], /logout, /help"
)

PROFILE_QUESTIONS = (
    ("language", "What language are you trying to learn? "),
    ("base_language", "Which language should feedback be written in? "),
    ("level", "What is your current level? (e.g. A2, B1, Advanced) "),
    ("interests", "What are a few of your interests? (e.g. travel, cooking) "),
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dialogic", description="Role-play language tutor")
    parser.add_argument("--config", help="YAML settings file")
    parser.add_argument("--data-dir", help="Directory for credentials, profile and conversations")
    parser.add_argument(
        "--log-level",
        default=os.getenv("DIALOGIC_LOG_LEVEL", "WARNING"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Validate and store a provider credential")
    login.add_argument("--provider", choices=PROVIDERS, required=True)
    login.add_argument("--key", help="API key, or host URL for ollama")

    sub.add_parser("logout", help="Remove every stored credential")

    profile = sub.add_parser("profile", help="Set the learner profile")
    profile.add_argument("--language")
    profile.add_argument("--base-language")
    profile.add_argument("--level")
    profile.add_argument("--interests")

    chat = sub.add_parser("chat", help="Run a role-play scenario")
    chat.add_argument("--provider", choices=PROVIDERS)
    chat.add_argument("--mode", choices=["live", "mock"], default="live")
    return parser


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level), format="%(asctime)s %(levelname)s %(name)s | %(message)s")
    for noisy in ("httpx", "httpcore", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _open(args: argparse.Namespace) -> tuple:
    settings = load_settings(Path(args.config) if args.config else None)
    if args.data_dir:
        settings.data_dir = Path(args.data_dir).expanduser()
    store = JsonStore.open(settings.data_dir)
    return settings, store


def cmd_login(args: argparse.Namespace, settings: Settings, store: JsonStore) -> int:
    secret = args.key
    if not secret and args.provider not in LOCAL_PROVIDERS:
        secret = getpass.getpass(f"{args.provider} API key: ").strip()
    if not secret and args.provider == "ollama":
        secret = settings.ollama_host
    gateway = ProviderGateway(settings, store)
    if not gateway.validate_credential(args.provider, secret):
        print(f"Could not validate the {args.provider} credential.", file=sys.stderr)
        return 1
    store.set_provider_key(args.provider, secret)
    store.set_active_provider(args.provider)
    print(f"Connected to {args.provider}.")
    return 0


def cmd_logout(args: argparse.Namespace, settings: Settings, store: JsonStore) -> int:
    store.clear_all_credentials()
    store.clear_active_conversation()
    print("All credentials removed.")
    return 0


def _prompt_profile(current: Optional[UserProfile], overrides: dict) -> UserProfile:
    values = current.to_dict() if current else {}
    answers = {
        "language": values.get("language", ""),
        "base_language": values.get("baseLanguage", ""),
        "level": values.get("level", ""),
        "interests": values.get("interests", ""),
    }
    answers.update({key: value for key, value in overrides.items() if value})
    for field_name, question in PROFILE_QUESTIONS:
        while not answers[field_name].strip():
            answers[field_name] = input(question).strip()
    return UserProfile(**answers)


def cmd_profile(args: argparse.Namespace, settings: Settings, store: JsonStore) -> int:
    overrides = {
        "language": args.language,
        "base_language": args.base_language,
        "level": args.level,
        "interests": args.interests,
    }
    profile = _prompt_profile(store.get_profile(), overrides)
    store.save_profile(profile)
    print("Profile saved.")
    return 0


@contextmanager
def _cancel_on_interrupt(event: threading.Event) -> Iterator[None]:
    event.clear()

    def _handler(signum, frame) -> None:
        print("\nCancelling current response...", file=sys.stderr)
        event.set()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


class _StreamProgress:
    """Shows how much of the tutor's reply has arrived while it streams."""

    def __init__(self, stream=None) -> None:
        self.stream = stream or sys.stderr
        self.active = False

    def __call__(self, text: str) -> None:
        self.active = True
        self.stream.write(f"\rTutor is typing... {len(text)} chars")
        self.stream.flush()

    def finish(self) -> None:
        if self.active:
            self.stream.write("\r\033[K")
            self.stream.flush()
            self.active = False


def _print_outcome(outcome: Optional[TurnOutcome]) -> None:
    if outcome is None:
        return
    if outcome.status == "aborted":
        print("Response cancelled.\n")
        return
    print(f"\nTutor: {outcome.message.content}")
    if outcome.ok and not outcome.decoded:
        print("(The tutor's reply could not be read, showing a fallback.)")
    if outcome.message.feedback:
        print(f"Feedback: {outcome.message.feedback}")
    print()


def _print_report(pipeline: ScenarioPipeline) -> None:
    report = pipeline.report_payload()
    if report is None:
        print("No report yet.")
        return
    print(render_report(report))


def _run_command(line: str, pipeline: ScenarioPipeline, cancel: threading.Event) -> bool:
    parts: List[str] = line.split(maxsplit=1)
    command = parts[0].lower()
    if command == "/help":
        print(HELP_TEXT)
    elif command == "/reset":
        with _cancel_on_interrupt(cancel):
            pipeline.reset(cancel)
        _print_latest(pipeline)
    elif command == "/report":
        if pipeline.report is None and pipeline.state is ScenarioState.COMPLETE:
            with _cancel_on_interrupt(cancel):
                pipeline.generate_report(cancel)
        _print_report(pipeline)
    elif command == "/export":
        report = pipeline.report_payload()
        if report is None:
            print("No report yet.")
        else:
            if len(parts) > 1:
                target = Path(parts[1]).expanduser()
            else:
                target = pipeline.settings.data_dir / "reports" / f"report-{utc_timestamp()}.md"
            write_report(target, report)
            print(f"Report written to {target}")
    elif command == "/logout":
        pipeline.logout()
        print("All credentials removed.")
        return False
    else:
        print(f"Unknown command {command}. {HELP_TEXT}")
    return True


def _print_latest(pipeline: ScenarioPipeline) -> None:
    visible = pipeline.visible_messages()
    if visible:
        print(f"\nTutor: {visible[-1].content}\n")


def cmd_chat(args: argparse.Namespace, settings: Settings, store: JsonStore) -> int:
    provider = "mock" if args.mode == "mock" else (args.provider or store.get_active_provider())
    if not provider:
        print("No provider selected. Run 'dialogic login --provider ...' first.", file=sys.stderr)
        return 1
    gateway = ProviderGateway(settings, store)
    if provider not in LOCAL_PROVIDERS and not gateway.resolve_secret(provider):
        print(f"Missing API key for {provider}. Run 'dialogic login --provider {provider}'.", file=sys.stderr)
        return 1

    profile = store.get_profile()
    if profile is None:
        print("Let's set up your profile first!\n")
        profile = _prompt_profile(None, {})
        store.save_profile(profile)

    logger.info("[cli] chat provider=%s data_dir=%s", provider, settings.data_dir)
    progress = _StreamProgress()
    pipeline = ScenarioPipeline(gateway, store, settings, profile, provider, on_chunk=progress)
    cancel = threading.Event()

    print(f"\nWelcome to the {profile.language} role-play tutor ({provider})\n")
    print(HELP_TEXT + "\n")
    with _cancel_on_interrupt(cancel):
        pipeline.start(cancel)
    progress.finish()
    for message in pipeline.visible_messages():
        label = "Tutor" if message.role == "assistant" else "You"
        print(f"{label}: {message.content}")
    print()
    if pipeline.report is not None:
        _print_report(pipeline)

    while True:
        try:
            line = input("You: ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            break
        if not line:
            continue
        if line.lower() in ("exit", "quit"):
            break
        if line.startswith("/"):
            keep_going = _run_command(line, pipeline, cancel)
            progress.finish()
            if not keep_going:
                break
            continue
        if pipeline.state is ScenarioState.BOOTSTRAPPING:
            with _cancel_on_interrupt(cancel):
                outcome = pipeline.bootstrap(cancel)
            progress.finish()
            _print_outcome(outcome)
            if outcome is not None and not outcome.ok:
                print("The scenario could not be opened. Type anything to try again.")
            continue
        try:
            with _cancel_on_interrupt(cancel):
                outcome = pipeline.submit(line, cancel)
        except TurnRejected as exc:
            progress.finish()
            print(f"{exc} Use /reset to start a new scenario or /report to view the report.")
            continue
        progress.finish()
        _print_outcome(outcome)
        if outcome.report is not None:
            print(render_report(outcome.report))
            print("Scenario complete. Use /reset to start a new one.")
    print("Exiting...")
    return 0


COMMANDS = {
    "login": cmd_login,
    "logout": cmd_logout,
    "profile": cmd_profile,
    "chat": cmd_chat,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.log_level)
    settings, store = _open(args)
    return COMMANDS[args.command](args, settings, store)


if __name__ == "__main__":
    raise SystemExit(main())
