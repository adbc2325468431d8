"""Pipeline copy engine.

:func:`copy` wires a source, zero or more bidirectional stages and a
destination together the way a shell pipe does, running every leg of the
pipeline on its own thread:

    src ──▶ filters[0] ──▶ filters[1] ──▶ … ──▶ dst

Each leg closes its output as soon as its own copy finishes, which is what
lets the next leg see EOF.  No leg is cancelled because a sibling failed;
every leg runs to completion and reports its own outcome.
"""

from __future__ import annotations

import io
import logging
import queue
import threading

from cmdpipe.errors import CopyError, StageOutcome, join_errors
from cmdpipe.stream import Readable, Stream, Writable, close_writer, copy_stream, describe
from cmdpipe.utils.quoting import human_readable_size

logger = logging.getLogger(__name__)


def copy(dst: Writable, src: Readable, *filters: Stream) -> int:
    """Copy *src* through *filters* into *dst*.

    Args:
        dst: Final destination; anything with ``write``.
        src: Pipeline input; anything with ``read``.
        *filters: Intermediate stages, each readable and writable
            (see :class:`cmdpipe.filter.Filter`).

    Returns:
        The number of bytes delivered to *dst*, i.e. the final stage's
        count.  This is not the sum over all stages: "data" through one
        pass-through stage returns 4, while the debug log reports 8 bytes
        moved in total.

    Raises:
        CopyError: One or more stages failed.  The error lists every stage
            (successful ones included) and carries the byte count in
            ``written``.
    """
    stages = len(filters) + 1
    result = CopyError(stages)
    counts: queue.Queue[tuple[int, int] | None] = queue.Queue()
    totals: queue.Queue[list[int]] = queue.Queue(maxsize=1)

    def _tally() -> None:
        per_stage = [0] * stages
        while True:
            item = counts.get()
            if item is None:
                break  # All stages finished
            index, n = item
            per_stage[index] += n
        totals.put(per_stage)

    def _run_stage(index: int, reader: Readable, writer: Writable) -> None:
        descriptor = describe(reader)
        logger.debug("Stage %d started: %s", index, descriptor)
        written = 0
        copy_error: Exception | None = None
        close_error: Exception | None = None
        try:
            written = copy_stream(writer, reader)
            counts.put((index, written))
        except Exception as exc:
            copy_error = exc
        finally:
            try:
                close_writer(writer, is_destination=index == stages - 1)
            except Exception as exc:
                close_error = exc
            error = join_errors(copy_error, close_error)
            if error is not None:
                logger.warning("Stage %d (%s) failed: %s", index, descriptor, error)
            else:
                logger.debug("Stage %d finished: %s (%d bytes)", index, descriptor, written)
            result.set(
                index,
                StageOutcome(
                    descriptor=descriptor,
                    error=error,
                    written=written if copy_error is None else 0,
                ),
            )

    tally = threading.Thread(target=_tally, name="pipeline-tally", daemon=True)
    tally.start()

    threads = []
    for i in range(stages):
        reader = src if i == 0 else filters[i - 1]
        writer = dst if i == stages - 1 else filters[i]
        threads.append(
            threading.Thread(
                target=_run_stage,
                args=(i, reader, writer),
                name=f"pipeline-stage-{i}",
                daemon=True,
            )
        )
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    counts.put(None)
    per_stage = totals.get()
    written = per_stage[-1]
    logger.debug(
        "Pipeline of %d stage(s) moved %s, delivered %s",
        stages,
        human_readable_size(sum(per_stage)),
        human_readable_size(written),
    )

    if result.failed:
        result.written = written
        raise result
    return written


def read_all(src: Readable, *filters: Stream) -> str:
    """Read *src* through *filters* and return the output as text.

    The trailing run of ``\\r``/``\\n`` characters is stripped; any other
    trailing whitespace is kept.  Errors from :func:`copy` propagate
    unchanged.
    """
    buf = io.BytesIO()
    copy(buf, src, *filters)
    return buf.getvalue().decode("utf-8", errors="replace").rstrip("\r\n")
