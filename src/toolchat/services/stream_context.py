"""
Resumable event streams.

A ResumableStreamContext runs the producer of each stream as its own task,
buffers the frames of live streams in memory and journals every frame to
``<journal_dir>/<stream_id>.jsonl``. Readers attach to a live stream and
receive every frame after their Last-Event-ID, so a reconnecting client
never sees a frame twice.

When the last reader of an unfinished stream detaches, the producer keeps
running for ``detach_grace_seconds`` so the client can reattach; if nobody
does, the producer is cancelled. Journals outlive their stream by
``journal_retention_seconds`` and are then deleted, which is also the age
at which leftovers from an earlier process are pruned on start-up.

StreamContextProvider owns the process-wide context: it is built lazily on
first use and a failed construction is remembered, so later turns go
straight to the non-resumable path.
"""

import asyncio
import json
import logging
import os
import re
import threading
import time
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, List, Optional

import aiofiles

from toolchat.models import FrameType, StreamFrame


logger = logging.getLogger(__name__)

_STREAM_ID_PATTERN = re.compile(r"^[A-Za-z0-9\-]{1,64}$")


class StreamStoreUnavailable(Exception):
    """The resumable stream backing store cannot be used."""
    pass


class _LiveStream:
    """In-memory state of a stream whose producer is still running."""

    def __init__(self, stream_id: str):
        self.stream_id = stream_id
        self.frames: List[StreamFrame] = []
        self.done = False
        self.readers = 0
        self.condition = asyncio.Condition()
        self.task: Optional[asyncio.Task] = None
        self.detach_timer: Optional[asyncio.TimerHandle] = None

    @property
    def last_seq(self) -> int:
        return self.frames[-1].seq if self.frames else 0

    def stop_detach_timer(self) -> None:
        if self.detach_timer is not None:
            self.detach_timer.cancel()
            self.detach_timer = None


class ResumableStreamContext:
    """Process-wide registry of resumable streams."""

    def __init__(
        self,
        journal_dir: str,
        detach_grace_seconds: float = 0.0,
        journal_retention_seconds: float = 300.0
    ):
        self.journal_dir = Path(journal_dir).expanduser()
        self.detach_grace_seconds = detach_grace_seconds
        self.journal_retention_seconds = journal_retention_seconds
        try:
            self.journal_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StreamStoreUnavailable(f"Cannot create stream journal {self.journal_dir}: {e}") from e
        if not os.access(self.journal_dir, os.W_OK):
            raise StreamStoreUnavailable(f"Stream journal {self.journal_dir} is not writable")

        self._streams: Dict[str, _LiveStream] = {}
        self._expiries: Dict[str, asyncio.TimerHandle] = {}
        self._prune_stale_journals()

    def _journal_path(self, stream_id: str) -> Path:
        if not _STREAM_ID_PATTERN.match(stream_id):
            raise ValueError(f"Invalid stream id: {stream_id!r}")
        return self.journal_dir / f"{stream_id}.jsonl"

    @property
    def active_streams(self) -> int:
        return len(self._streams)

    def resumable_stream(
        self,
        stream_id: str,
        make_stream: Callable[[], AsyncIterator[StreamFrame]]
    ) -> AsyncIterator[StreamFrame]:
        """Start producing a new stream and attach the first reader to it."""
        if stream_id in self._streams:
            raise ValueError(f"Stream {stream_id} is already running")

        self._journal_path(stream_id)
        live = _LiveStream(stream_id)
        self._streams[stream_id] = live
        live.task = asyncio.create_task(self._produce(live, make_stream()))
        logger.debug(f"Started resumable stream {stream_id}")
        return self._read(live, 0)

    async def resume_existing_stream(
        self,
        stream_id: str,
        last_event_id: int = 0
    ) -> Optional[AsyncIterator[StreamFrame]]:
        """Attach to an existing stream.

        Returns:
            The frames after ``last_event_id``: live from the producer while
            it runs, otherwise replayed from a journal that has not expired
            yet. None when the stream is unknown or its journal is gone.
        """
        live = self._streams.get(stream_id)
        if live is not None and not live.done:
            logger.debug(f"Resuming live stream {stream_id} after {last_event_id}")
            return self._read(live, last_event_id)

        frames = await self._load_journal(stream_id)
        if frames is None:
            return None

        logger.info(f"Replaying stream {stream_id} from journal after {last_event_id}")
        return self._replay(frames, last_event_id)

    async def discard(self, stream_id: str) -> bool:
        """Stop a stream if it is still running and delete its journal.

        Returns:
            True if a journal file was removed
        """
        live = self._streams.get(stream_id)
        if live is not None and live.task is not None and not live.task.done():
            live.task.cancel()
            await asyncio.gather(live.task, return_exceptions=True)

        expiry = self._expiries.pop(stream_id, None)
        if expiry is not None:
            expiry.cancel()
        return self._remove_journal(stream_id)

    async def _produce(self, live: _LiveStream, frames: AsyncIterator[StreamFrame]) -> None:
        path = self._journal_path(live.stream_id)
        journal = None
        try:
            journal = await aiofiles.open(path, "a")
        except OSError as e:
            logger.warning(f"Stream {live.stream_id} will not be journaled: {e}")

        outcome = "finished"
        try:
            async for frame in frames:
                if journal is not None:
                    try:
                        await journal.write(json.dumps(frame.model_dump(), default=str) + "\n")
                    except OSError as e:
                        logger.warning(f"Journal write failed for stream {live.stream_id}: {e}")
                        journal = None
                async with live.condition:
                    live.frames.append(frame)
                    live.condition.notify_all()
        except asyncio.CancelledError:
            outcome = "cancelled"
            raise
        except Exception:
            outcome = "failed"
            logger.exception(f"Producer of stream {live.stream_id} failed")
        finally:
            aclose = getattr(frames, "aclose", None)
            if aclose is not None:
                await aclose()
            if journal is not None:
                try:
                    await journal.write(json.dumps({"terminal": True, "outcome": outcome}) + "\n")
                    await journal.close()
                except OSError as e:
                    logger.warning(f"Could not close journal of stream {live.stream_id}: {e}")
            live.stop_detach_timer()
            async with live.condition:
                live.done = True
                live.condition.notify_all()
            self._streams.pop(live.stream_id, None)
            self._schedule_expiry(live.stream_id)
            logger.debug(f"Stream {live.stream_id} {outcome}")

    async def _read(self, live: _LiveStream, after: int) -> AsyncIterator[StreamFrame]:
        live.readers += 1
        live.stop_detach_timer()
        index = 0
        completed = False
        try:
            while True:
                async with live.condition:
                    while index >= len(live.frames) and not live.done:
                        await live.condition.wait()
                    pending = live.frames[index:]
                    index = len(live.frames)
                    finished = live.done

                for frame in pending:
                    if frame.is_done:
                        completed = True
                    if frame.seq > after:
                        yield frame
                    if frame.is_done:
                        return

                if finished:
                    completed = True
                    yield StreamFrame(seq=live.last_seq + 1, type=FrameType.DONE)
                    return
        finally:
            live.readers -= 1
            if live.readers == 0 and not completed and not live.done:
                self._detached(live)

    def _detached(self, live: _LiveStream) -> None:
        if self.detach_grace_seconds <= 0:
            self._cancel_abandoned(live)
            return

        logger.info(
            f"Last reader detached from stream {live.stream_id}, "
            f"keeping producer for {self.detach_grace_seconds}s"
        )
        live.stop_detach_timer()
        live.detach_timer = asyncio.get_running_loop().call_later(
            self.detach_grace_seconds, self._cancel_abandoned, live
        )

    def _cancel_abandoned(self, live: _LiveStream) -> None:
        live.detach_timer = None
        if live.readers == 0 and not live.done and live.task is not None:
            logger.info(f"No reader attached to stream {live.stream_id}, cancelling producer")
            live.task.cancel()

    async def _replay(self, frames: List[StreamFrame], after: int) -> AsyncIterator[StreamFrame]:
        last_seq = after
        for frame in frames:
            if frame.seq > after:
                yield frame
                if frame.is_done:
                    return
            last_seq = max(last_seq, frame.seq)
        yield StreamFrame(seq=last_seq + 1, type=FrameType.DONE)

    async def _load_journal(self, stream_id: str) -> Optional[List[StreamFrame]]:
        try:
            path = self._journal_path(stream_id)
        except ValueError:
            return None
        if not path.exists():
            return None

        frames: List[StreamFrame] = []
        async with aiofiles.open(path, "r") as journal:
            async for line in journal:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping corrupt journal line in stream {stream_id}")
                    continue
                if not record.get("terminal"):
                    frames.append(StreamFrame(**record))
        return frames

    def _schedule_expiry(self, stream_id: str) -> None:
        previous = self._expiries.pop(stream_id, None)
        if previous is not None:
            previous.cancel()
        if self.journal_retention_seconds <= 0:
            self._remove_journal(stream_id)
            return
        self._expiries[stream_id] = asyncio.get_running_loop().call_later(
            self.journal_retention_seconds, self._expire_journal, stream_id
        )

    def _expire_journal(self, stream_id: str) -> None:
        self._expiries.pop(stream_id, None)
        self._remove_journal(stream_id)

    def _remove_journal(self, stream_id: str) -> bool:
        try:
            self._journal_path(stream_id).unlink()
        except (ValueError, FileNotFoundError):
            return False
        except OSError as e:
            logger.warning(f"Could not remove journal of stream {stream_id}: {e}")
            return False
        logger.debug(f"Removed journal of stream {stream_id}")
        return True

    def _prune_stale_journals(self) -> None:
        cutoff = time.time() - self.journal_retention_seconds
        pruned = 0
        for path in self.journal_dir.glob("*.jsonl"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    pruned += 1
            except OSError as e:
                logger.warning(f"Could not prune stream journal {path.name}: {e}")
        if pruned:
            logger.info(f"Pruned {pruned} expired stream journals")

    async def shutdown(self) -> None:
        """Cancel every running producer and pending timer."""
        tasks = []
        for live in self._streams.values():
            live.stop_detach_timer()
            if live.task is not None:
                tasks.append(live.task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for expiry in self._expiries.values():
            expiry.cancel()
        self._expiries.clear()


class StreamContextProvider:
    """Lazily built, once-guarded owner of the resumable stream context."""

    def __init__(
        self,
        factory: Optional[Callable[[], ResumableStreamContext]],
    ):
        self._factory = factory
        self._lock = threading.Lock()
        self._context: Optional[ResumableStreamContext] = None
        self._failure: Optional[StreamStoreUnavailable] = None
        self._attempted = factory is None

    @classmethod
    def from_config(
        cls,
        enabled: bool,
        journal_directory: str,
        detach_grace_seconds: float = 30.0,
        journal_retention_seconds: float = 300.0
    ) -> "StreamContextProvider":
        if not enabled:
            logger.info("Resumable streams are disabled by configuration")
            return cls(None)
        return cls(lambda: ResumableStreamContext(
            journal_directory,
            detach_grace_seconds=detach_grace_seconds,
            journal_retention_seconds=journal_retention_seconds,
        ))

    def get(self) -> Optional[ResumableStreamContext]:
        """Return the shared context, or None when it is unavailable."""
        if self._attempted:
            return self._context

        with self._lock:
            if not self._attempted:
                try:
                    self._context = self._factory()
                    logger.info("Resumable stream context initialized")
                except StreamStoreUnavailable as e:
                    self._failure = e
                    logger.warning(f"Resumable streams are disabled: {e}")
                except Exception as e:
                    self._failure = StreamStoreUnavailable(str(e))
                    logger.error(f"Resumable stream context failed to initialize: {e}", exc_info=True)
                finally:
                    self._attempted = True

        return self._context

    @property
    def current(self) -> Optional[ResumableStreamContext]:
        """The context if it was already built, without building it."""
        return self._context

    @property
    def failure(self) -> Optional[StreamStoreUnavailable]:
        return self._failure

    @property
    def available(self) -> bool:
        return self.get() is not None
