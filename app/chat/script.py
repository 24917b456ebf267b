"""Scripted qualification dialogue run before a human admin joins a chat.

The script is a fixed sequence of steps.  Each step has a French prompt
template, the profile field the visitor's reply to that prompt fills, and a
successor::

    welcome -> name -> company -> service -> phone -> confirmation
    confirmation -> livechat_request -> livechat_waiting   (affirmative reply)
    confirmation -> completed                              (any other reply)

State is never stored on its own.  :func:`compute_state` replays a session's
history: every scripted prompt records its step and a snapshot of the profile
in its ``metadata`` (``scriptStep`` / ``profile``), so the awaited step is the
step of the last prompt.  Prompts persisted without that metadata are
interpreted by counting completed exchanges.  A single ``admin`` message
anywhere in the history deactivates the script for good.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from collections.abc import Iterable
from enum import Enum
from typing import Any

from pydantic import ValidationError

from ..models.chat import SENDER_ADMIN, SENDER_SCRIPT, SENDER_VISITOR
from .schemas import ChatMessage, CustomerInfo, to_wire

logger = logging.getLogger(__name__)

BRAND_NAME = os.getenv("BRAND_NAME", "Axes Trade")

#: ``metadata["kind"]`` of the script message persisted for a live-agent request.
LIVE_CHAT_REQUEST_KIND = "live_chat_request"

AFFIRMATIVE_REPLIES = frozenset({"oui", "o", "yes", "y", "ok", "d'accord"})


class ScriptStep(str, Enum):
    WELCOME = "welcome"
    NAME = "name"
    COMPANY = "company"
    SERVICE = "service"
    PHONE = "phone"
    CONFIRMATION = "confirmation"
    LIVECHAT_REQUEST = "livechat_request"
    LIVECHAT_WAITING = "livechat_waiting"
    COMPLETED = "completed"
    DEACTIVATED = "deactivated"


@dataclasses.dataclass(frozen=True)
class StepDefinition:
    """Prompt, collected field and successor of one script step."""

    template: str | None
    collects: str | None = None
    successor: ScriptStep | None = None


STEPS: dict[ScriptStep, StepDefinition] = {
    ScriptStep.WELCOME: StepDefinition(
        "Bonjour et bienvenue chez {brand} ! 👋 Je suis votre assistant virtuel. "
        "Comment puis-je vous aider aujourd'hui ?",
        successor=ScriptStep.NAME,
    ),
    ScriptStep.NAME: StepDefinition(
        "Pour mieux vous assister, j'aurais besoin de quelques informations. "
        "Quel est votre nom ?",
        collects="name",
        successor=ScriptStep.COMPANY,
    ),
    ScriptStep.COMPANY: StepDefinition(
        "Merci {name}. Et de quelle entreprise faites-vous partie ?",
        collects="company",
        successor=ScriptStep.SERVICE,
    ),
    ScriptStep.SERVICE: StepDefinition(
        "Super ! Maintenant, pouvez-vous me dire quel type de service ou produit "
        "vous intéresse ? (Imprimantes, consommables, maintenance, etc.)",
        collects="service_interest",
        successor=ScriptStep.PHONE,
    ),
    ScriptStep.PHONE: StepDefinition(
        "Excellent ! Afin qu'un de nos conseillers puisse vous recontacter, "
        "pourriez-vous me laisser votre numéro de téléphone ?",
        collects="phone",
        successor=ScriptStep.CONFIRMATION,
    ),
    ScriptStep.CONFIRMATION: StepDefinition(
        "Merci pour ces informations {name}. Un conseiller de {brand} vous "
        "contactera très rapidement au {phone} concernant votre demande sur "
        "{service}. Préférez-vous parler immédiatement avec un conseiller en "
        "ligne ? (Oui/Non)",
        successor=ScriptStep.LIVECHAT_REQUEST,
    ),
    # Transient: raises the live-agent notification, emits no prompt.
    ScriptStep.LIVECHAT_REQUEST: StepDefinition(
        None, successor=ScriptStep.LIVECHAT_WAITING
    ),
    ScriptStep.LIVECHAT_WAITING: StepDefinition(
        "Je recherche un conseiller disponible pour vous. "
        "Veuillez patienter quelques instants..."
    ),
    ScriptStep.COMPLETED: StepDefinition(
        "Merci pour votre demande {name}. Notre équipe vous contactera dans les "
        "plus brefs délais. Bonne journée !"
    ),
    ScriptStep.DEACTIVATED: StepDefinition(None),
}

TERMINAL_STEPS = frozenset(
    {ScriptStep.LIVECHAT_WAITING, ScriptStep.COMPLETED, ScriptStep.DEACTIVATED}
)


@dataclasses.dataclass(frozen=True)
class ConversationState:
    """Replayed script position of one session.

    ``step`` is the step whose prompt the visitor is expected to answer, or
    ``None`` when no prompt has been sent yet.
    """

    step: ScriptStep | None = None
    profile: CustomerInfo = dataclasses.field(default_factory=CustomerInfo)

    @property
    def deactivated(self) -> bool:
        return self.step is ScriptStep.DEACTIVATED

    @property
    def active(self) -> bool:
        return self.step not in TERMINAL_STEPS


@dataclasses.dataclass(frozen=True)
class ScriptTransition:
    """Outcome of one visitor reply: the prompt to persist next."""

    step: ScriptStep
    prompt: str
    profile: CustomerInfo
    live_chat_requested: bool = False

    def metadata(self) -> dict[str, Any]:
        return {"scriptStep": self.step.value, "profile": to_wire(self.profile)}


def is_affirmative(reply: str) -> bool:
    """Return ``True`` when ``reply`` accepts the live-agent offer."""

    normalized = reply.strip().lower().rstrip(" !.?")
    return normalized in AFFIRMATIVE_REPLIES or "oui" in normalized


def render_prompt(step: ScriptStep, profile: CustomerInfo, *, brand: str = BRAND_NAME) -> str:
    template = STEPS[step].template
    if template is None:
        raise ValueError(f"Step {step.value} has no prompt")
    return template.format(
        brand=brand,
        name=profile.name,
        company=profile.company,
        service=profile.service_interest,
        phone=profile.phone,
    )


def _recorded_step(metadata: dict[str, Any]) -> ScriptStep | None:
    value = metadata.get("scriptStep")
    if not value:
        return None
    try:
        return ScriptStep(value)
    except ValueError:
        logger.warning("Ignoring unknown script step %r in message metadata", value)
        return None


def _counted_successor(step: ScriptStep | None, last_reply: str | None) -> ScriptStep:
    """Step of a prompt stored without metadata, from the exchange count."""

    if step is None:
        return ScriptStep.WELCOME
    if step is ScriptStep.CONFIRMATION:
        if last_reply is not None and is_affirmative(last_reply):
            return ScriptStep.LIVECHAT_WAITING
        return ScriptStep.COMPLETED
    if step in TERMINAL_STEPS:
        return step
    successor = STEPS[step].successor
    return successor if successor is not None else step


def compute_state(messages: Iterable[ChatMessage]) -> ConversationState:
    """Replay a session history into its current :class:`ConversationState`.

    ``messages`` must be in delivery order.  The function is pure: replaying
    the same history always yields the same state.
    """

    history = list(messages)
    if any(message.sender == SENDER_ADMIN for message in history):
        return ConversationState(step=ScriptStep.DEACTIVATED)

    step: ScriptStep | None = None
    profile = CustomerInfo()
    last_reply: str | None = None

    for message in history:
        if message.sender == SENDER_SCRIPT:
            metadata = message.metadata or {}
            if metadata.get("kind") == LIVE_CHAT_REQUEST_KIND:
                continue
            recorded = _recorded_step(metadata)
            if recorded is None:
                step = _counted_successor(step, last_reply)
            else:
                step = recorded
                snapshot = metadata.get("profile")
                if isinstance(snapshot, dict):
                    try:
                        profile = CustomerInfo.model_validate(snapshot)
                    except ValidationError:
                        logger.warning("Ignoring malformed profile snapshot in script metadata")
            last_reply = None
        elif message.sender == SENDER_VISITOR:
            reply = message.body.strip()
            # Only the first reply to a prompt counts.
            if not reply or last_reply is not None:
                continue
            last_reply = reply
            if step is not None and STEPS[step].collects:
                profile = profile.model_copy(update={STEPS[step].collects: reply})

    return ConversationState(step=step, profile=profile)


def _is_prompt(message: ChatMessage) -> bool:
    return (
        message.sender == SENDER_SCRIPT
        and (message.metadata or {}).get("kind") != LIVE_CHAT_REQUEST_KIND
    )


def unanswered_reply(messages: Iterable[ChatMessage]) -> int | None:
    """Return the index of the first visitor reply to the latest prompt.

    Before any prompt, the first visitor message is the reply owed a welcome.
    ``None`` means the latest prompt is still waiting for the visitor.
    """

    history = list(messages)
    start = 0
    for index in range(len(history) - 1, -1, -1):
        if _is_prompt(history[index]):
            start = index + 1
            break
    for index in range(start, len(history)):
        message = history[index]
        if message.sender == SENDER_VISITOR and message.body.strip():
            return index
    return None


class ScriptEngine:
    """Advances the scripted dialogue by one step per visitor reply."""

    def __init__(self, *, brand_name: str = BRAND_NAME) -> None:
        self._brand_name = brand_name

    def replay(self, messages: Iterable[ChatMessage]) -> ConversationState:
        return compute_state(messages)

    def advance(self, state: ConversationState, reply: str) -> ScriptTransition | None:
        """Return the next prompt for ``reply``, or ``None`` when nothing happens.

        Blank replies, finished dialogues and deactivated sessions are no-ops.
        """
        reply = (reply or "").strip()
        if not reply or not state.active:
            return None
        if state.step is None:
            return self._transition(ScriptStep.WELCOME, state.profile)

        definition = STEPS[state.step]
        profile = state.profile
        if definition.collects:
            profile = profile.model_copy(update={definition.collects: reply})

        if state.step is ScriptStep.CONFIRMATION:
            if is_affirmative(reply):
                return self._transition(
                    ScriptStep.LIVECHAT_WAITING, profile, live_chat_requested=True
                )
            return self._transition(ScriptStep.COMPLETED, profile)

        if definition.successor is None:
            return None
        return self._transition(definition.successor, profile)

    def pending_transition(self, messages: Iterable[ChatMessage]) -> ScriptTransition | None:
        """Return the prompt owed to the first unanswered reply in ``messages``.

        The latest prompt is answered once, by its first reply. Further replies
        to the same prompt yield ``None``, and a reply whose prompt was never
        stored gets it on the next call.
        """
        history = list(messages)
        if any(message.sender == SENDER_ADMIN for message in history):
            return None
        index = unanswered_reply(history)
        if index is None:
            return None
        return self.advance(self.replay(history[:index]), history[index].body)

    def _transition(
        self,
        step: ScriptStep,
        profile: CustomerInfo,
        *,
        live_chat_requested: bool = False,
    ) -> ScriptTransition:
        return ScriptTransition(
            step=step,
            prompt=render_prompt(step, profile, brand=self._brand_name),
            profile=profile,
            live_chat_requested=live_chat_requested,
        )


__all__ = [
    "AFFIRMATIVE_REPLIES",
    "BRAND_NAME",
    "LIVE_CHAT_REQUEST_KIND",
    "STEPS",
    "ConversationState",
    "ScriptEngine",
    "ScriptStep",
    "ScriptTransition",
    "compute_state",
    "is_affirmative",
    "unanswered_reply",
    "render_prompt",
]
