"""
Conversation orchestration.

Turns a user's question plus their cached transcript into a model
request, and the model's reply into an Outcome. Only answered exchanges
touch the cache and the archive; degraded and failed exchanges leave
both untouched.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from gateway.background import BackgroundWorker
from gateway.context_store import ContextStore, KeyedLock, Turn, serialize_transcript, truncate_transcript
from gateway.errors import CacheFailure, UpstreamFailure
from gateway.llm_client import ChatModelClient
from gateway.metrics import record_model_outcome
from gateway.utils import sanitize_answer, utc_now_iso

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = "Sorry, I can't answer right now. Please try again later."
SERVICE_UNAVAILABLE = "The service is temporarily unavailable. Please try again later."
CANNOT_ANSWER = "Sorry, I can't answer this question for now."


class ChatArchive(Protocol):
    async def save(self, user_id: str, question: str, answer: str, created_at: str) -> None: ...


class OutcomeKind(str, Enum):
    ANSWERED = "answered"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(frozen=True)
class Outcome:
    """
    Result of one exchange. Degraded and failed outcomes still carry a
    user-facing text so the protocol layer can render every kind.
    """
    kind: OutcomeKind
    text: str
    reason: Optional[str] = None

    @property
    def answered(self) -> bool:
        return self.kind is OutcomeKind.ANSWERED

    @classmethod
    def answer(cls, text: str) -> "Outcome":
        return cls(OutcomeKind.ANSWERED, text)

    @classmethod
    def degraded(cls, reason: str, text: str = FALLBACK_ANSWER) -> "Outcome":
        return cls(OutcomeKind.DEGRADED, text, reason)

    @classmethod
    def failed(cls, reason: str) -> "Outcome":
        return cls(OutcomeKind.FAILED, SERVICE_UNAVAILABLE, reason)


class ConversationOrchestrator:
    """
    Args:
        context_store: Per-user transcript cache
        model_client: Chat completion client
        archive: Collaborator receiving completed exchanges
        worker: Background queue for archival
        timeout: Upper bound in seconds on one model call
    """

    def __init__(
        self,
        context_store: ContextStore,
        model_client: ChatModelClient,
        archive: ChatArchive,
        worker: BackgroundWorker,
        timeout: float = 5.0,
    ):
        self.context_store = context_store
        self.model_client = model_client
        self.archive = archive
        self.worker = worker
        self.timeout = timeout
        self._locks = KeyedLock()

    async def answer(self, user_id: str, question: str) -> Outcome:
        """
        Answer a question within the user's conversation.

        Not idempotent: each answered call adds a user turn and an
        assistant turn to the transcript.
        """
        async with self._locks(user_id):
            transcript = self._read_context(user_id)
            user_turn = Turn("user", question)

            working = truncate_transcript(transcript + [user_turn], self.context_store.max_chars)
            prompt = serialize_transcript(working)
            logger.info(f"Asking model for user {user_id}: {len(working)} turn(s) in prompt")

            outcome = await self._call_model(prompt)
            if not outcome.answered:
                logger.warning(f"No answer for user {user_id}: {outcome.kind.value} ({outcome.reason})")
                return outcome

            try:
                self.context_store.extend(user_id, [user_turn, Turn("assistant", outcome.text)])
            except CacheFailure as e:
                logger.error(f"Context update failed for user {user_id}: {e.reason}")

        self.worker.submit(
            "archive_chat_record",
            self.archive.save,
            user_id,
            question,
            sanitize_answer(outcome.text),
            utc_now_iso(),
        )
        logger.info(f"Answered user {user_id}: {len(outcome.text)} chars")
        return outcome

    async def ask(self, question: str) -> Outcome:
        """Single stateless question: no context, no archive."""
        return await self._call_model(question)

    def _read_context(self, user_id: str) -> list[Turn]:
        try:
            return self.context_store.get(user_id)
        except CacheFailure as e:
            logger.error(f"Context read failed for user {user_id}, continuing without context: {e.reason}")
            return []

    async def _call_model(self, prompt: str) -> Outcome:
        started = time.monotonic()
        outcome = await self._complete(prompt)
        record_model_outcome(outcome.kind.value, time.monotonic() - started)
        return outcome

    async def _complete(self, prompt: str) -> Outcome:
        try:
            completion = await asyncio.wait_for(self.model_client.complete(prompt), timeout=self.timeout)
        except asyncio.TimeoutError:
            return Outcome.failed("timeout")
        except UpstreamFailure as e:
            return Outcome.failed(e.reason)
        except Exception:
            logger.exception("Model call failed unexpectedly")
            return Outcome.failed("unexpected_error")

        if not completion.choices:
            return Outcome.degraded("empty_completion")
        text = completion.choices[0].message.content
        if text is None or not text.strip():
            return Outcome.degraded("blank_completion", CANNOT_ANSWER)
        return Outcome.answer(text)
