from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from dialogic.adapters.gateway import ProviderGateway
from dialogic.adapters.llm_base import CancelToken, GenerationAborted
from dialogic.concepts import load_concepts
from dialogic.config import Settings
from dialogic.gates.parsers import decode_report, encode_report, parse_report, parse_turn
from dialogic.ledger import build_mistake_log
from dialogic.models import Message, ScenarioState, UserProfile, count_user_turns, derive_state
from dialogic.prompts import REPORT_REQUEST, build_report_prompt, build_system_prompt
from dialogic.store import JsonStore

logger = logging.getLogger(__name__)

BOOTSTRAP_PROMPT = (
    "Let's start the role-play scenario. Please initiate the conversation "
    "without responding to this message."
)
ERROR_MESSAGE = "*** Error processing request. Check your API key or network connection. ***"
CANCELLED_MESSAGE = "*** Generation cancelled. ***"

MessagesCallback = Callable[[List[Message]], None]


class TurnRejected(RuntimeError):
    pass


@dataclass
class TurnOutcome:
    status: str
    message: Message
    decoded: bool = False
    error: Optional[str] = None
    report: Optional[Dict] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class ScenarioPipeline:
    """Drives one role-play conversation from bootstrap to report.

    ``messages`` holds settled exchanges only, which is exactly what is sent
    to the provider and saved. The turn in flight, or the last one that
    failed, lives in ``pending`` until the next attempt. The scenario state is
    always derived from ``messages`` and the stored report.
    """

    def __init__(
        self,
        gateway: ProviderGateway,
        store: JsonStore,
        settings: Settings,
        profile: UserProfile,
        provider: str,
        on_update: Optional[MessagesCallback] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.settings = settings
        self.profile = profile
        self.provider = provider
        self.on_update = on_update
        self.on_chunk = on_chunk
        self.id_factory = id_factory

        self.conversation_id: Optional[str] = None
        self.messages: List[Message] = []
        self.pending: List[Message] = []
        self.report: Optional[str] = None
        self.concepts: Set[str] = set()
        self._bootstrap_started = False
        self._in_flight = False

    @property
    def state(self) -> ScenarioState:
        if self.conversation_id is None:
            return ScenarioState.UNINITIALIZED
        if not self.messages:
            return ScenarioState.BOOTSTRAPPING
        return derive_state(self.messages, self.report is not None, self.settings.max_turns)

    @property
    def busy(self) -> bool:
        return self._in_flight

    @property
    def turn_count(self) -> int:
        return count_user_turns(self.messages)

    def visible_messages(self) -> List[Message]:
        return [message for message in self.messages + self.pending if not message.is_hidden]

    def report_payload(self) -> Optional[Dict]:
        return decode_report(self.report)

    def start(self, cancel: Optional[CancelToken] = None) -> ScenarioState:
        self.concepts = self._load_concepts()
        if self._resume():
            logger.info("[scenario] resumed %s state=%s", self.conversation_id, self.state.value)
            if self.state is ScenarioState.COMPLETE:
                self.generate_report(cancel)
            elif not self.messages:
                self.bootstrap(cancel)
            return self.state
        self._new_conversation()
        self.bootstrap(cancel)
        return self.state

    def reset(self, cancel: Optional[CancelToken] = None) -> ScenarioState:
        if self._in_flight:
            raise TurnRejected("Cannot reset while a response is being generated.")
        self.concepts = self._load_concepts()
        self._new_conversation()
        self.bootstrap(cancel)
        return self.state

    def logout(self) -> None:
        self.store.clear_all_credentials()
        self.store.clear_active_conversation()

    def bootstrap(self, cancel: Optional[CancelToken] = None) -> Optional[TurnOutcome]:
        """Ask the tutor to open the scenario.

        Runs once per conversation. A failed or cancelled opening leaves the
        conversation empty and may be retried.
        """
        if self._bootstrap_started or self.messages or self.conversation_id is None:
            return None
        self._bootstrap_started = True

        opener = Message(role="user", content=BOOTSTRAP_PROMPT, is_hidden=True)
        instruction = build_system_prompt(self.profile, [], self.concepts)
        outcome = self._run_turn(opener, [], instruction, cancel, keep_feedback=False)
        if not outcome.ok:
            self._bootstrap_started = False
        return outcome

    def submit(self, text: str, cancel: Optional[CancelToken] = None) -> TurnOutcome:
        if not text or not text.strip():
            raise TurnRejected("Please enter a response.")
        if self._in_flight:
            raise TurnRejected("A response is already being generated.")
        state = self.state
        if state is not ScenarioState.ACTIVE:
            raise TurnRejected(f"Scenario is not accepting turns (state: {state.value}).")

        instruction = build_system_prompt(self.profile, build_mistake_log(self.messages), self.concepts)
        prompt = Message(role="user", content=text)
        outcome = self._run_turn(prompt, self.messages, instruction, cancel, keep_feedback=True)
        if outcome.ok and self.state is ScenarioState.COMPLETE:
            logger.info("[scenario] %s complete after %d turns", self.conversation_id, self.turn_count)
            outcome.report = self.generate_report(cancel)
        return outcome

    def generate_report(self, cancel: Optional[CancelToken] = None) -> Optional[Dict]:
        if self.report is not None:
            return self.report_payload()
        if self.state is not ScenarioState.COMPLETE:
            raise TurnRejected("The scenario is not complete yet.")
        if self._in_flight:
            raise TurnRejected("A response is already being generated.")

        instruction = build_report_prompt(self.profile, build_mistake_log(self.messages))
        try:
            raw = self._generate([Message(role="user", content=REPORT_REQUEST)], instruction, cancel)
        except GenerationAborted:
            logger.info("[scenario] report generation cancelled")
            return None
        except Exception as exc:
            logger.error("[scenario] report generation failed: %s", exc)
            return None

        result = parse_report(raw, self.settings.fallback_snippet_chars)
        encoded = encode_report(result.payload)
        self.store.save_conversation_report(self.conversation_id, encoded)
        self.report = encoded
        logger.info("[scenario] %s reported concepts=%d", self.conversation_id, len(result.payload["concepts_to_review"]))
        return result.payload

    def _run_turn(
        self,
        prompt: Message,
        prior: List[Message],
        instruction: str,
        cancel: Optional[CancelToken],
        keep_feedback: bool,
    ) -> TurnOutcome:
        # Only a completed exchange joins the history; failures stay in ``pending`` for display.
        history = list(prior) + [prompt]
        self.pending = [prompt, Message(role="assistant", content="")]
        self._notify()
        try:
            raw = self._generate(history, instruction, cancel)
        except GenerationAborted:
            logger.info("[scenario] generation cancelled")
            return TurnOutcome(status="aborted", message=self._settle_pending(CANCELLED_MESSAGE))
        except Exception as exc:
            logger.error("[scenario] generation failed: %s", exc)
            return TurnOutcome(
                status="error",
                message=self._settle_pending(ERROR_MESSAGE),
                error=str(exc),
            )

        result = parse_turn(raw, self.settings.fallback_snippet_chars)
        feedback = result.payload["feedback"] if keep_feedback else None
        reply = Message(role="assistant", content=result.payload["response"], feedback=feedback)
        self.messages = history + [reply]
        self.pending = []
        self._persist()
        self._notify()
        return TurnOutcome(status="ok", message=reply, decoded=result.ok)

    def _generate(self, history: List[Message], instruction: str, cancel: Optional[CancelToken]) -> str:
        self._in_flight = True
        try:
            return self.gateway.stream_chat(
                self.provider,
                history,
                instruction,
                on_chunk=self.on_chunk,
                cancel=cancel,
            )
        finally:
            self._in_flight = False

    def _settle_pending(self, notice: str) -> Message:
        message = Message(role="assistant", content=notice)
        self.pending[-1] = message
        self._notify()
        return message

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self.messages + self.pending)

    def _persist(self) -> None:
        self.store.save_conversation(self.conversation_id, self.messages)

    def _new_conversation(self) -> None:
        self.conversation_id = self.id_factory()
        self.store.set_active_conversation(self.conversation_id)
        self.messages = []
        self.pending = []
        self.report = None
        self._bootstrap_started = False
        logger.info("[scenario] new conversation %s", self.conversation_id)

    def _resume(self) -> bool:
        active_id = self.store.get_active_conversation()
        if not active_id:
            return False
        try:
            conversation = self.store.get_conversation(active_id)
        except ValueError as exc:
            logger.warning("[scenario] cannot load active conversation: %s", exc)
            return False
        if conversation is None:
            return False
        self.conversation_id = conversation.id
        self.messages = list(conversation.messages)
        self.pending = []
        self.report = conversation.report
        self._bootstrap_started = bool(self.messages)
        return True

    def _load_concepts(self) -> Set[str]:
        try:
            return load_concepts(self.store, self.settings.recent_reports)
        except Exception as exc:
            logger.error("[scenario] failed to load concepts from recent reports: %s", exc)
            return set()
