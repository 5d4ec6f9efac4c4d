"""Newline-delimited JSON framing for story streams.

Wire format: one JSON object per line, ``\\n`` terminated, nothing else.

    {"story": "<fragment>"}     zero or more, in emission order
    {"image": "<url>"}          exactly one, then the sender closes
    {"error": "...", "code": …, replaces the image record when the turn fails
     "committed": bool}         after the response has started; committed
                                tells whether the text turn was kept

The receiving side never assumes a record boundary lines up with a transport
chunk boundary; :class:`StreamReassembler` buffers partial lines (and partial
UTF-8 sequences) between reads.
"""
from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterator, Iterable, Iterator, List, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from storyteller.utils.errors import GenerationFailed, InternalStateError

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"


class StreamRecord(BaseModel):
    """One transmitted unit.  Exactly one of story / image / error is set."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    story: Optional[str] = None
    image: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None
    committed: Optional[bool] = None

    @model_validator(mode="after")
    def _one_kind(self) -> "StreamRecord":
        kinds = [k for k in ("story", "image", "error") if getattr(self, k) is not None]
        if len(kinds) != 1:
            raise ValueError(f"expected exactly one of story/image/error, got {kinds or 'none'}")
        if self.error is None and (self.code is not None or self.committed is not None):
            raise ValueError("code/committed are only allowed on error records")
        return self

    @property
    def terminal(self) -> bool:
        return self.story is None

    def encode(self) -> bytes:
        return (json.dumps(self.model_dump(exclude_none=True)) + "\n").encode("utf-8")


# ── server side ──────────────────────────────────────────

async def frame(records: AsyncIterator[StreamRecord]) -> AsyncIterator[bytes]:
    """Encode records as they are produced; one line per record."""
    async for record in records:
        yield record.encode()


# ── client side ──────────────────────────────────────────

def parse_record(data: Any) -> StreamRecord:
    """Validate one decoded record."""
    if not isinstance(data, dict):
        raise InternalStateError(f"Stream record is not an object: {data!r:.80}")
    try:
        return StreamRecord.model_validate(data)
    except ValidationError as exc:
        raise InternalStateError(f"Unexpected stream record: {data!r:.80}") from exc


def parse_line(line: str) -> StreamRecord:
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise InternalStateError(f"Malformed stream line: {line[:80]!r}") from exc
    return parse_record(data)


class StreamReassembler:
    """Buffer → split → parse → dispatch, one transport chunk at a time.

    ``text`` is the running concatenation of every ``story`` fragment seen so
    far; ``image`` is set by the terminal record.  An ``error`` record is
    raised as ``GenerationFailed`` once the fragments before it were applied.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self.text = ""
        self.image: Optional[str] = None
        self.finished = False

    def feed(self, chunk: Union[bytes, str]) -> List[StreamRecord]:
        """Consume one transport chunk; return the records it completed."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return [self._dispatch(line) for line in lines if line.strip()]

    def close(self) -> List[StreamRecord]:
        """End of source: flush whatever is left as a final line."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        records = [self._dispatch(tail)] if tail.strip() else []
        if not self.finished:
            raise InternalStateError("Stream closed before the image record arrived.")
        return records

    def _dispatch(self, line: str) -> StreamRecord:
        if self.finished:
            raise InternalStateError("Record received after the terminal record.")
        record = parse_line(line)
        if record.story is not None:
            self.text += record.story
        elif record.image is not None:
            self.image = record.image
            self.finished = True
        else:
            self.finished = True
            logger.warning("Server reported failure mid-stream: %s (%s)", record.error, record.code)
            raise GenerationFailed(
                record.error, code=record.code, story=self.text if record.committed else None
            )
        return record


def iter_records(chunks: Iterable[Union[bytes, str]], reassembler: Optional[StreamReassembler] = None) -> Iterator[StreamRecord]:
    """Drive a reassembler from any pull-based chunk source."""
    reassembler = reassembler or StreamReassembler()
    for chunk in chunks:
        yield from reassembler.feed(chunk)
    yield from reassembler.close()
