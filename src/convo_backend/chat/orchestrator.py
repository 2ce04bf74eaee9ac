"""Turn orchestrator coordinating credit checks, streaming, speech and persistence."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Optional

from ..errors import (
    InvalidMessageType,
    NotFound,
    TurnError,
    TurnValidationError,
)
from ..services.credit_gate import CreditDecision, CreditGate
from ..services.tts import SentenceSegmenter, SpeechRelay
from .channel import ChannelClosed, TurnChannel
from .context_builder import TurnContextBuilder, UploadedImage
from .persistence import APPEND, CompletedTurn, TurnPersistence, truncation_point

if TYPE_CHECKING:
    from ..completion import CompletionClient
    from ..config import Settings
    from ..repository import ConversationRepository
    from ..services.media import MediaStore
    from ..services.notifier import BillingNotifier
    from ..services.sessions import SessionData
    from ..services.stt_service import Transcriber
    from ..services.tts_service import TTSService

logger = logging.getLogger(__name__)

TEXT_MEDIA_TYPE = "text/plain"
VOICE_MEDIA_TYPE = "audio/wav"
SHUTDOWN_GRACE_SECONDS = 10.0


@dataclass
class TurnRequest:
    conversation_id: str
    model: str
    message_type: str
    message: str = ""
    voice: Optional[bytes] = None
    voice_filename: Optional[str] = None
    edit_target: int = APPEND
    images: list[UploadedImage] = field(default_factory=list)


@dataclass
class TurnStream:
    """Response side of a started turn."""

    media_type: str
    body: AsyncIterator[bytes]


@dataclass
class _TurnJob:
    request: TurnRequest
    session: "SessionData"
    decision: CreditDecision
    user_text: str
    messages: list[dict]
    image_paths: list[str]
    channel: TurnChannel

    @property
    def is_voice(self) -> bool:
        return self.request.message_type == "voice"


class TurnOrchestrator:
    """High-level coordination for one streamed conversation turn."""

    def __init__(
        self,
        *,
        settings: "Settings",
        repository: "ConversationRepository",
        media_store: "MediaStore",
        completion_client: "CompletionClient",
        tts_service: "TTSService",
        transcriber: "Transcriber",
        notifier: "BillingNotifier",
        credit_gate: Optional[CreditGate] = None,
    ):
        self._settings = settings
        self._repository = repository
        self._completion = completion_client
        self._tts = tts_service
        self._transcriber = transcriber
        self._credit_gate = credit_gate or CreditGate(settings.model_prices)
        self._context_builder = TurnContextBuilder(media_store)
        self._persistence = TurnPersistence(repository, media_store, notifier)
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def credit_gate(self) -> CreditGate:
        return self._credit_gate

    @property
    def active_turns(self) -> int:
        return len(self._tasks)

    async def start_turn(
        self, request: TurnRequest, session: "SessionData"
    ) -> TurnStream:
        """Validate the turn and start streaming it in the background.

        Every error raised here happens before any output is produced and
        before the provider is called.
        """
        decision = self._credit_gate.authorize(request.model, session.credits_remaining)

        if request.message_type not in ("text", "voice"):
            raise InvalidMessageType(
                f"Unsupported message type '{request.message_type}'"
            )

        if request.message_type == "voice":
            if not request.voice:
                raise TurnValidationError("Voice message is missing")
            user_text = await self._transcriber.transcribe(
                request.voice, request.voice_filename
            )
        else:
            if not request.message.strip():
                raise TurnValidationError("Message is empty")
            user_text = request.message

        # Advisory read; the binding check repeats inside the commit transaction.
        conversation = await self._repository.get_conversation(
            session.user_id, request.conversation_id
        )
        if conversation is None:
            raise NotFound(
                f"Conversation '{request.conversation_id}' does not exist"
            )
        index = truncation_point(request.edit_target, len(conversation.entries))

        context = await self._context_builder.build(
            conversation.id,
            conversation.entries[:index],
            user_text,
            request.images,
        )

        channel = TurnChannel(self._settings.relay_queue_size)
        job = _TurnJob(
            request=request,
            session=session,
            decision=decision,
            user_text=user_text,
            messages=context.messages,
            image_paths=context.image_paths,
            channel=channel,
        )
        task = asyncio.create_task(
            self._run_turn(job), name=f"turn-{request.conversation_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(
            "Started %s turn for conversation %s (model=%s, cost=%.4f)",
            request.message_type,
            request.conversation_id,
            request.model,
            decision.cost,
        )
        media_type = VOICE_MEDIA_TYPE if job.is_voice else TEXT_MEDIA_TYPE
        return TurnStream(media_type=media_type, body=self._iter_body(channel))

    async def _iter_body(self, channel: TurnChannel) -> AsyncIterator[bytes]:
        try:
            async for frame in channel.receive():
                yield frame
        finally:
            channel.close()

    async def _run_turn(self, job: _TurnJob) -> None:
        channel = job.channel
        started = time.monotonic()
        try:
            text_parts, assistant_audio = await self._relay(job)
            result = await self._persistence.commit_turn(
                CompletedTurn(
                    user_id=job.session.user_id,
                    conversation_id=job.request.conversation_id,
                    edit_target=job.request.edit_target,
                    message_type="voice" if job.is_voice else "text",
                    user_text=job.user_text,
                    assistant_text="".join(text_parts),
                    credits_remaining=job.decision.remaining,
                    token=job.session.token,
                    image_paths=job.image_paths,
                    voice_audio=job.request.voice,
                    voice_filename=job.request.voice_filename,
                    assistant_audio=assistant_audio,
                )
            )
            if result.error is not None:
                await self._fail(channel, result.error)
                return
            await channel.finish()
            logger.info(
                "Turn for conversation %s finished in %.0fms",
                job.request.conversation_id,
                (time.monotonic() - started) * 1000,
            )
        except TurnError as exc:
            logger.error(
                "Turn for conversation %s aborted: %s",
                job.request.conversation_id,
                exc,
            )
            await self._fail(channel, exc)
        except Exception:
            logger.exception(
                "Unexpected failure in turn for conversation %s",
                job.request.conversation_id,
            )
            await self._fail(channel, TurnError("Internal server error"))

    async def _relay(self, job: _TurnJob) -> tuple[list[str], Optional[bytes]]:
        """Forward provider output and return the accumulated text and audio.

        A client disconnect stops the provider read but keeps what has been
        accumulated so far. Upstream failures propagate.
        """
        channel = job.channel
        text_parts: list[str] = []
        segmenter = SentenceSegmenter() if job.is_voice else None
        relay = SpeechRelay(self._tts) if job.is_voice else None

        try:
            async with aclosing(
                self._completion.stream_deltas(job.request.model, job.messages)
            ) as deltas:
                async for delta in deltas:
                    text_parts.append(delta)
                    if segmenter is None or relay is None:
                        await channel.send(delta.encode("utf-8"))
                        continue
                    for sentence in segmenter.feed(delta):
                        async with aclosing(relay.speak(sentence)) as frames:
                            async for frame in frames:
                                await channel.send(frame)
        except ChannelClosed:
            logger.info(
                "Client left conversation %s after %d chars; saving partial turn",
                job.request.conversation_id,
                sum(len(part) for part in text_parts),
            )
            return text_parts, self._archived_audio(relay)

        if relay is not None:
            relay.ensure_output()
            if segmenter is not None and segmenter.pending:
                logger.debug(
                    "Unterminated tail of %d chars was not synthesized",
                    len(segmenter.pending),
                )
        return text_parts, self._archived_audio(relay)

    def _archived_audio(self, relay: Optional[SpeechRelay]) -> Optional[bytes]:
        if relay is None or not self._settings.archive_assistant_audio:
            return None
        return relay.audio or None

    @staticmethod
    async def _fail(channel: TurnChannel, exc: TurnError) -> None:
        try:
            await channel.fail(str(exc.detail))
        except ChannelClosed:
            logger.debug("Client already gone; dropping error marker: %s", exc)

    async def shutdown(self) -> None:
        """Let in-flight turns finish, cancelling any that overrun the grace period."""

        if not self._tasks:
            return
        pending = set(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=SHUTDOWN_GRACE_SECONDS)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("Cancelled %d unfinished turn(s) at shutdown", len(still_running))


__all__ = ["TurnOrchestrator", "TurnRequest", "TurnStream"]
