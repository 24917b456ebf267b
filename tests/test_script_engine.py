"""Tests for :mod:`app.chat.script`."""

from datetime import datetime, timedelta, timezone

import pytest

from app.chat.schemas import ChatMessage, CustomerInfo
from app.chat.script import (
    LIVE_CHAT_REQUEST_KIND,
    ScriptEngine,
    ScriptStep,
    compute_state,
    is_affirmative,
    unanswered_reply,
    render_prompt,
)

START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class History:
    """Builds a session history the way the relay would persist it."""

    def __init__(self) -> None:
        self.messages: list[ChatMessage] = []

    def add(self, sender: str, body: str, metadata: dict | None = None) -> ChatMessage:
        message = ChatMessage(
            id=len(self.messages) + 1,
            session_id="s1",
            sender=sender,
            body=body,
            timestamp=START + timedelta(seconds=len(self.messages)),
            metadata=metadata,
        )
        self.messages.append(message)
        return message

    def reply(self, engine: ScriptEngine, body: str):
        """Visitor reply followed by the script prompt it triggers, if any."""
        state = engine.replay(self.messages)
        self.add("visitor", body)
        transition = engine.advance(state, body)
        if transition is not None:
            self.add("script", transition.prompt, transition.metadata())
        return transition


@pytest.fixture
def engine() -> ScriptEngine:
    return ScriptEngine(brand_name="Acme Print")


def test_empty_history_has_no_step():
    state = compute_state([])
    assert state.step is None
    assert state.active
    assert state.profile == CustomerInfo()


def test_first_visitor_message_triggers_welcome(engine):
    history = History()
    transition = history.reply(engine, "Bonjour")

    assert transition.step is ScriptStep.WELCOME
    assert "Acme Print" in transition.prompt
    assert history.messages[-1].metadata["scriptStep"] == "welcome"


def test_full_dialogue_collects_profile(engine):
    history = History()
    history.reply(engine, "Bonjour")
    history.reply(engine, "Je cherche une imprimante")
    company_prompt = history.reply(engine, "Alice")
    assert company_prompt.step is ScriptStep.COMPANY
    assert company_prompt.prompt.startswith("Merci Alice.")

    history.reply(engine, "Acme")
    history.reply(engine, "Imprimantes")
    confirmation = history.reply(engine, "06 01 02 03 04")

    assert confirmation.step is ScriptStep.CONFIRMATION
    assert "Alice" in confirmation.prompt
    assert "06 01 02 03 04" in confirmation.prompt
    assert "Imprimantes" in confirmation.prompt
    assert confirmation.prompt.endswith("(Oui/Non)")
    assert confirmation.profile == CustomerInfo(
        name="Alice", company="Acme", service="Imprimantes", phone="06 01 02 03 04"
    )

    state = compute_state(history.messages)
    assert state.step is ScriptStep.CONFIRMATION
    assert state.profile.phone == "06 01 02 03 04"


def _history_at_confirmation(engine) -> History:
    history = History()
    for reply in ("Bonjour", "Un devis", "Alice", "Acme", "Maintenance", "0600000000"):
        history.reply(engine, reply)
    return history


def test_affirmative_confirmation_requests_live_chat(engine):
    history = _history_at_confirmation(engine)
    transition = history.reply(engine, "Oui !")

    assert transition.step is ScriptStep.LIVECHAT_WAITING
    assert transition.live_chat_requested is True
    assert compute_state(history.messages).step is ScriptStep.LIVECHAT_WAITING


def test_negative_confirmation_completes(engine):
    history = _history_at_confirmation(engine)
    transition = history.reply(engine, "Non merci")

    assert transition.step is ScriptStep.COMPLETED
    assert transition.live_chat_requested is False
    assert "Alice" in transition.prompt


def test_terminal_steps_ignore_further_replies(engine):
    history = _history_at_confirmation(engine)
    history.reply(engine, "non")

    assert history.reply(engine, "Encore une question") is None


def test_admin_message_deactivates_script(engine):
    history = History()
    history.reply(engine, "Bonjour")
    history.add("admin", "Bonjour, comment puis-je vous aider ?")

    state = compute_state(history.messages)
    assert state.deactivated
    assert history.reply(engine, "J'ai une question") is None
    # Later visitor messages never reactivate it.
    assert compute_state(history.messages).deactivated


def test_replay_is_idempotent(engine):
    history = _history_at_confirmation(engine)
    assert compute_state(history.messages) == compute_state(history.messages)


def test_blank_reply_is_ignored(engine):
    assert engine.advance(compute_state([]), "   ") is None


def test_prompts_without_metadata_are_counted():
    history = History()
    history.add("visitor", "Bonjour")
    history.add("script", "Bienvenue")
    history.add("visitor", "Je voudrais des infos")
    history.add("script", "Quel est votre nom ?")
    history.add("visitor", "Bob")
    history.add("script", "Merci Bob. Et de quelle entreprise ?")

    state = compute_state(history.messages)
    assert state.step is ScriptStep.COMPANY
    assert state.profile.name == "Bob"


def test_live_chat_request_marker_is_not_a_prompt(engine):
    history = History()
    history.reply(engine, "Bonjour")
    history.add(
        "script",
        "Alice souhaite parler avec un conseiller en ligne.",
        {"kind": LIVE_CHAT_REQUEST_KIND, "customerInfo": {"name": "Alice"}},
    )

    assert compute_state(history.messages).step is ScriptStep.WELCOME


def test_unanswered_reply():
    history = History()
    assert unanswered_reply(history.messages) is None
    history.add("visitor", "Bonjour")
    assert unanswered_reply(history.messages) == 0
    history.add("script", "Quel est votre nom ?", {"scriptStep": "name"})
    assert unanswered_reply(history.messages) is None
    history.add("visitor", "   ")
    history.add("visitor", "Alice")
    history.add("visitor", "Alice Martin")
    assert unanswered_reply(history.messages) == 3


def test_pending_transition_answers_first_reply_once(engine):
    history = History()
    history.reply(engine, "Bonjour")
    history.add("visitor", "Un devis")
    history.add("visitor", "Un devis SVP")

    transition = engine.pending_transition(history.messages)

    assert transition.step is ScriptStep.NAME
    history.add("script", transition.prompt, transition.metadata())
    assert engine.pending_transition(history.messages) is None


def test_pending_transition_recovers_missing_prompt(engine):
    history = History()
    for reply in ("Bonjour", "Un devis"):
        history.reply(engine, reply)
    # The prompt answering "Alice" was never stored.
    history.add("visitor", "Alice")
    history.add("visitor", "Alice")

    transition = engine.pending_transition(history.messages)

    assert transition.step is ScriptStep.COMPANY
    assert transition.profile.name == "Alice"
    assert "Merci Alice" in transition.prompt


def test_pending_transition_is_silenced_by_admin(engine):
    history = History()
    history.reply(engine, "Bonjour")
    history.add("admin", "Bonjour, je prends le relais.")
    history.add("visitor", "Merci")

    assert engine.pending_transition(history.messages) is None


@pytest.mark.parametrize(
    "reply, expected",
    [
        ("Oui", True),
        ("oui !", True),
        ("OK", True),
        ("yes", True),
        ("Oui, avec plaisir", True),
        ("Non", False),
        ("plus tard", False),
        ("", False),
    ],
)
def test_is_affirmative(reply, expected):
    assert is_affirmative(reply) is expected


def test_transient_step_has_no_prompt():
    with pytest.raises(ValueError):
        render_prompt(ScriptStep.LIVECHAT_REQUEST, CustomerInfo())
