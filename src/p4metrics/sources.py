"""Line sources feeding the metrics pipeline."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TextIO

from p4metrics.channel import Channel

logger = logging.getLogger(__name__)


async def read_lines(stream: TextIO, out: Channel[str]) -> int:
    """Read a text stream line by line onto a channel.

    Blocking reads run in a daemon thread, so a read stuck on a quiet pipe
    never holds up the event loop or interpreter shutdown. Each line is
    handed to the loop and the thread waits for it to be accepted, so a
    full channel slows the reader down. The channel is closed at end of
    input, which starts the pipeline's graceful shutdown.

    Args:
        stream: An open text stream.
        out: Channel receiving lines without their trailing newline.

    Returns:
        Number of lines read.

    Raises:
        OSError: If reading the stream fails.
    """
    loop = asyncio.get_running_loop()
    finished: asyncio.Future[int] = loop.create_future()

    def finish(count: int, error: BaseException | None) -> None:
        if finished.done():
            return
        if error is not None:
            finished.set_exception(error)
        else:
            finished.set_result(count)

    def reader() -> None:
        count = 0
        error: BaseException | None = None
        try:
            for line in iter(stream.readline, ""):
                count += 1
                put = asyncio.run_coroutine_threadsafe(
                    out.put(line.rstrip("\r\n")), loop
                )
                put.result()
        except Exception as e:
            error = e
        if not loop.is_closed():
            loop.call_soon_threadsafe(finish, count, error)

    threading.Thread(target=reader, name="p4metrics-reader", daemon=True).start()
    try:
        count = await finished
    finally:
        if not out.closed:
            out.close()
    logger.debug(f"Read {count} lines")
    return count
