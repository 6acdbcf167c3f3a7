from __future__ import annotations

import json
import threading

import pytest
from conftest import ScriptedAdapter, report_json, turn_json

from dialogic.adapters.gateway import ProviderGateway
from dialogic.gates.parsers import FALLBACK_FEEDBACK_PREFIX, FALLBACK_RESPONSE
from dialogic.models import Message, ScenarioState
from dialogic.pipeline_scenario import (
    BOOTSTRAP_PROMPT,
    CANCELLED_MESSAGE,
    ERROR_MESSAGE,
    ScenarioPipeline,
    TurnRejected,
)


def _ids(*values):
    queue = list(values)
    return lambda: queue.pop(0)


@pytest.fixture
def make_pipeline(gateway, store, settings, profile):
    def _make(**kwargs):
        kwargs.setdefault("id_factory", _ids("conv-1", "conv-2", "conv-3"))
        return ScenarioPipeline(gateway, store, settings, profile, "scripted", **kwargs)

    return _make


def _play_full_scenario(pipeline, adapter):
    adapter.replies = [
        turn_json("¡Bienvenido al hotel!", ""),
        turn_json("¿Cuántas noches?", "Use 'estoy' instead of 'soy' for states."),
        turn_json("Perfecto.", "Correct, no mistakes."),
        report_json("### Review\n- ser vs estar", ["ser vs estar for temporary states"]),
    ]
    pipeline.start()
    first = pipeline.submit("Yo soy cansado")
    second = pipeline.submit("Tres noches, por favor")
    return first, second


def test_start_bootstraps_with_hidden_opener(make_pipeline, adapter, store):
    adapter.replies = [turn_json("¡Hola! Estamos en el aeropuerto.", "ignored")]
    pipeline = make_pipeline()

    state = pipeline.start()

    assert state is ScenarioState.ACTIVE
    assert pipeline.conversation_id == "conv-1"
    assert store.get_active_conversation() == "conv-1"
    opener, reply = pipeline.messages
    assert opener.is_hidden and opener.content == BOOTSTRAP_PROMPT
    assert reply == Message("assistant", "¡Hola! Estamos en el aeropuerto.")
    assert pipeline.visible_messages() == [reply]
    assert pipeline.turn_count == 0
    assert len(adapter.calls) == 1
    assert "PAST MISTAKES" not in adapter.calls[0]["instruction"]
    saved = store.get_conversation("conv-1")
    assert [message.to_dict() for message in saved.messages] == [message.to_dict() for message in pipeline.messages]


def test_placeholder_is_visible_to_observers_while_waiting(make_pipeline, adapter):
    snapshots = []
    pipeline = make_pipeline(on_update=snapshots.append)

    pipeline.start()

    assert [message.content for message in snapshots[0]] == [BOOTSTRAP_PROMPT, ""]
    assert snapshots[-1][-1].content == "Sigamos."


def test_bootstrap_runs_at_most_once(make_pipeline, adapter):
    pipeline = make_pipeline()
    pipeline.start()

    assert pipeline.bootstrap() is None
    pipeline.messages = []
    assert pipeline.bootstrap() is None
    assert len(adapter.calls) == 1


def test_chunks_are_forwarded_cumulatively(make_pipeline, adapter):
    chunks = []
    adapter.replies = [turn_json("Hola, ¿qué tal?", "")]
    pipeline = make_pipeline(on_chunk=chunks.append)

    pipeline.start()

    assert len(chunks) > 1
    assert all(later.startswith(earlier) for earlier, later in zip(chunks, chunks[1:]))
    assert json.loads(chunks[-1])["response"] == "Hola, ¿qué tal?"


def test_turn_uses_mistake_log_from_prior_messages(make_pipeline, adapter):
    pipeline = make_pipeline()
    first, second = _play_full_scenario(pipeline, adapter)

    assert first.ok and first.decoded
    assert first.message.feedback == "Use 'estoy' instead of 'soy' for states."
    turn_one_prompt = adapter.calls[1]["instruction"]
    turn_two_prompt = adapter.calls[2]["instruction"]
    assert "PAST MISTAKES" not in turn_one_prompt
    assert 'User: "Yo soy cansado"' in turn_two_prompt
    sent_roles = [turn.role for turn in adapter.calls[2]["turns"]]
    assert sent_roles == ["user", "assistant", "user", "assistant", "user"]


def test_second_turn_completes_and_triggers_one_report(make_pipeline, adapter, store):
    pipeline = make_pipeline()
    _, second = _play_full_scenario(pipeline, adapter)

    assert pipeline.state is ScenarioState.REPORTED
    assert len(adapter.calls) == 4
    report_call = adapter.calls[3]
    assert '"concepts_to_review"' in report_call["instruction"]
    assert 'User said: "Tres noches, por favor"' in report_call["instruction"]
    assert second.report == {
        "human_summary": "### Review\n- ser vs estar",
        "concepts_to_review": ["ser vs estar for temporary states"],
    }
    stored = json.loads(store.get_conversation("conv-1").report)
    assert stored == second.report


def test_submissions_are_rejected_after_completion(make_pipeline, adapter):
    pipeline = make_pipeline()
    _play_full_scenario(pipeline, adapter)

    with pytest.raises(TurnRejected):
        pipeline.submit("Una pregunta más")
    assert len(adapter.calls) == 4
    assert pipeline.generate_report() == pipeline.report_payload()
    assert len(adapter.calls) == 4


def test_blank_input_is_rejected(make_pipeline):
    pipeline = make_pipeline()
    pipeline.start()

    with pytest.raises(TurnRejected):
        pipeline.submit("   ")


def test_submit_is_rejected_while_generation_in_flight(make_pipeline, adapter):
    pipeline = make_pipeline()
    pipeline.start()
    attempts = []

    def reenter(_text):
        try:
            pipeline.submit("otra vez")
        except TurnRejected as exc:
            attempts.append(str(exc))

    pipeline.on_chunk = reenter
    pipeline.submit("Hola")

    assert attempts
    assert pipeline.turn_count == 1


def test_malformed_output_uses_fallback_and_continues(make_pipeline, adapter):
    adapter.replies = [turn_json("Hola", ""), "I refuse to answer in JSON."]
    pipeline = make_pipeline()
    pipeline.start()

    outcome = pipeline.submit("Hola")

    assert outcome.ok and not outcome.decoded
    assert outcome.message.content == FALLBACK_RESPONSE
    assert outcome.message.feedback.startswith(FALLBACK_FEEDBACK_PREFIX)
    assert pipeline.state is ScenarioState.ACTIVE


def test_provider_failure_replaces_placeholder_and_skips_persistence(make_pipeline, adapter, store):
    adapter.replies = [turn_json("Hola", ""), ConnectionError("boom")]
    pipeline = make_pipeline()
    pipeline.start()
    persisted_before = store.get_conversation("conv-1").to_dict()["messages"]

    outcome = pipeline.submit("Hola")

    assert outcome.status == "error"
    assert "boom" in outcome.error
    assert pipeline.visible_messages()[-2:] == [Message("user", "Hola"), Message("assistant", ERROR_MESSAGE)]
    assert pipeline.turn_count == 0
    assert store.get_conversation("conv-1").to_dict()["messages"] == persisted_before
    assert not pipeline.busy


def test_cancelled_generation_is_reported_as_aborted(make_pipeline, adapter):
    cancel = threading.Event()
    pipeline = make_pipeline()
    pipeline.start()
    adapter.replies = [turn_json("Una respuesta bastante larga", "")]
    adapter.cancel_after_first_chunk = cancel

    outcome = pipeline.submit("Hola", cancel)

    assert outcome.status == "aborted"
    assert pipeline.visible_messages()[-1] == Message("assistant", CANCELLED_MESSAGE)
    assert pipeline.turn_count == 0
    assert pipeline.state is ScenarioState.ACTIVE


def test_missing_credential_resolves_turn_with_error(store, settings, profile, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    pipeline = ScenarioPipeline(ProviderGateway(settings, store), store, settings, profile, "openai")

    pipeline.start()

    assert pipeline.visible_messages() == [Message("assistant", ERROR_MESSAGE)]
    assert pipeline.messages == []
    assert pipeline.state is ScenarioState.BOOTSTRAPPING
    assert store.get_conversation(pipeline.conversation_id) is None
    with pytest.raises(TurnRejected):
        pipeline.submit("Hola")


def test_report_failure_leaves_scenario_complete_for_retry(make_pipeline, adapter):
    adapter.replies = [
        turn_json("Hola", ""),
        turn_json("r1", "f1"),
        turn_json("r2", "f2"),
        TimeoutError("slow"),
        report_json("later", ["retry concept"]),
    ]
    pipeline = make_pipeline()
    pipeline.start()
    pipeline.submit("uno")
    outcome = pipeline.submit("dos")

    assert outcome.report is None
    assert pipeline.state is ScenarioState.COMPLETE
    assert pipeline.generate_report() == {"human_summary": "later", "concepts_to_review": ["retry concept"]}
    assert pipeline.state is ScenarioState.REPORTED


def test_resume_loads_active_conversation_without_bootstrapping(make_pipeline, adapter, store):
    store.save_conversation(
        "saved",
        [Message("user", BOOTSTRAP_PROMPT, is_hidden=True), Message("assistant", "Hola")],
    )
    store.set_active_conversation("saved")
    pipeline = make_pipeline()

    assert pipeline.start() is ScenarioState.ACTIVE
    assert pipeline.conversation_id == "saved"
    assert adapter.calls == []


def test_resume_regenerates_missing_report(make_pipeline, adapter, store):
    store.save_conversation(
        "done",
        [
            Message("user", BOOTSTRAP_PROMPT, is_hidden=True),
            Message("assistant", "Hola"),
            Message("user", "uno"),
            Message("assistant", "r1", feedback="f1"),
            Message("user", "dos"),
            Message("assistant", "r2", feedback="f2"),
        ],
    )
    store.set_active_conversation("done")
    adapter.replies = [report_json("resumed", ["c1"])]
    pipeline = make_pipeline()

    assert pipeline.start() is ScenarioState.REPORTED
    assert len(adapter.calls) == 1
    assert json.loads(store.get_conversation("done").report)["concepts_to_review"] == ["c1"]


def test_missing_active_conversation_starts_fresh(make_pipeline, adapter, store):
    store.set_active_conversation("vanished")
    pipeline = make_pipeline()

    pipeline.start()

    assert pipeline.conversation_id == "conv-1"
    assert len(adapter.calls) == 1


def test_reset_starts_new_conversation_with_carried_concepts(make_pipeline, adapter, store):
    pipeline = make_pipeline()
    _play_full_scenario(pipeline, adapter)
    adapter.replies = [turn_json("Nuevo escenario", "")]

    state = pipeline.reset()

    assert state is ScenarioState.ACTIVE
    assert pipeline.conversation_id == "conv-2"
    assert pipeline.report is None
    assert pipeline.concepts == {"ser vs estar for temporary states"}
    assert "=== HISTORICAL WEAKNESSES TO ENFORCE ===" in adapter.calls[-1]["instruction"]
    assert "- ser vs estar for temporary states" in adapter.calls[-1]["instruction"]
    assert store.get_conversation("conv-1").report is not None
    assert store.get_active_conversation() == "conv-2"


def test_logout_clears_credentials_and_active_conversation(make_pipeline, store):
    store.set_provider_key("openai", "sk")
    store.set_active_provider("openai")
    pipeline = make_pipeline()
    pipeline.start()

    pipeline.logout()

    assert store.get_provider_key("openai") is None
    assert store.get_active_provider() is None
    assert store.get_active_conversation() is None


def test_custom_turn_threshold(make_pipeline, adapter, settings):
    settings.max_turns = 3
    pipeline = make_pipeline()
    pipeline.start()
    pipeline.submit("uno")
    pipeline.submit("dos")

    assert pipeline.state is ScenarioState.ACTIVE
    pipeline.submit("tres")
    assert pipeline.state in (ScenarioState.COMPLETE, ScenarioState.REPORTED)


@pytest.mark.parametrize("opening", [turn_json("", ""), json.dumps({"feedback": "x"})])
def test_empty_opening_still_activates_scenario(make_pipeline, adapter, store, opening):
    adapter.replies = [opening, turn_json("r1", "f1")]
    pipeline = make_pipeline()

    assert pipeline.start() is ScenarioState.ACTIVE
    assert pipeline.messages[-1] == Message("assistant", "")
    assert pipeline.submit("Hola").ok

    resumed = make_pipeline(id_factory=_ids("unused"))
    assert resumed.start() is ScenarioState.ACTIVE
    assert resumed.turn_count == 1
    assert len(adapter.calls) == 2


def test_failed_opening_can_be_retried(make_pipeline, adapter, store):
    adapter.replies = [ConnectionError("down"), turn_json("¡Hola!", "")]
    pipeline = make_pipeline()
    pipeline.start()

    outcome = pipeline.bootstrap()

    assert outcome.ok
    assert pipeline.state is ScenarioState.ACTIVE
    assert [message.content for message in pipeline.messages] == [BOOTSTRAP_PROMPT, "¡Hola!"]
    assert [message.content for message in store.get_conversation("conv-1").messages] == [BOOTSTRAP_PROMPT, "¡Hola!"]
    assert pipeline.bootstrap() is None


def test_failed_final_turn_does_not_complete_scenario(make_pipeline, adapter, store):
    adapter.replies = [
        turn_json("Hola", ""),
        turn_json("r1", "f1"),
        ConnectionError("boom"),
        turn_json("r2", "f2"),
        report_json("done", ["c1"]),
    ]
    pipeline = make_pipeline()
    pipeline.start()
    pipeline.submit("uno")

    failed = pipeline.submit("dos")

    assert failed.status == "error"
    assert pipeline.state is ScenarioState.ACTIVE
    assert pipeline.turn_count == 1
    assert store.get_conversation("conv-1").report is None

    retried = pipeline.submit("dos")

    assert retried.ok
    assert retried.report == {"human_summary": "done", "concepts_to_review": ["c1"]}
    assert pipeline.state is ScenarioState.REPORTED
    assert len(adapter.calls) == 5


@pytest.mark.parametrize("failure", ["error", "aborted"])
def test_failed_turn_is_neither_sent_nor_saved_later(make_pipeline, adapter, store, failure):
    cancel = threading.Event()
    pipeline = make_pipeline()
    adapter.replies = [turn_json("Hola", ""), turn_json("r1", "f1")]
    pipeline.start()
    pipeline.submit("uno")
    if failure == "error":
        adapter.replies = [ConnectionError("boom")]
        pipeline.submit("perdido")
    else:
        adapter.replies = [turn_json("Una respuesta bastante larga", "")]
        adapter.cancel_after_first_chunk = cancel
        pipeline.submit("perdido", cancel)
        adapter.cancel_after_first_chunk = None
        cancel.clear()
    adapter.replies = [turn_json("r1 bis", "")]

    pipeline.submit("uno bis", cancel)

    sent = [turn.content for turn in adapter.calls[-1]["turns"]]
    saved = [message.content for message in store.get_conversation("conv-1").messages]
    expected = [BOOTSTRAP_PROMPT, "Hola", "uno", "r1", "uno bis"]
    assert sent == expected
    assert saved == expected + ["r1 bis"]
    assert ERROR_MESSAGE not in saved and CANCELLED_MESSAGE not in saved
    assert pipeline.visible_messages()[-1].content == "r1 bis"
