"""Stream a blob from a download into an upload with bounded memory

A pull thread reads chunks from the source and writes them into a `Pipe`,
the push side hands the pipe to the sink as its request body. At most
`max_chunks` chunks are buffered at any time.
"""
import logging
import queue
import threading
from collections.abc import Callable, Iterable, Iterator

from ocicopy.oci.errors import TransferInterrupted

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHUNKS = 8
# Seconds between checks whether the other side went away
POLL_INTERVAL = 0.05
# Seconds to wait for the pull thread after the upload side failed
ABANDON_TIMEOUT = 4 * POLL_INTERVAL

_EOF = object()


class _Failure:
    __slots__ = ("error",)

    def __init__(self, error: BaseException):
        self.error = error


class Pipe:
    """Bounded, single-use conduit between exactly one writer and one reader

    The writer calls `write` for every chunk and `finish` once. The reader
    iterates over the pipe; iteration ends at end of input or raises the
    writer's error. `close` tells the writer nobody is reading anymore.
    """

    def __init__(self, max_chunks: int = DEFAULT_MAX_CHUNKS):
        if max_chunks < 1:
            raise ValueError("max_chunks must be at least 1")
        self._queue: queue.Queue = queue.Queue(maxsize=max_chunks)
        self._closed = threading.Event()
        self.bytes_read = 0
        self.complete = False

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def write(self, chunk) -> bool:
        """Queue `chunk`, return False if the reader is gone"""
        while not self._closed.is_set():
            try:
                self._queue.put(chunk, timeout=POLL_INTERVAL)
            except queue.Full:
                continue
            return True
        return False

    def finish(self, error: BaseException | None = None) -> bool:
        """Signal end of input, or the error that ended it"""
        return self.write(_EOF if error is None else _Failure(error))

    def close(self):
        """Stop accepting writes and release anything still buffered"""
        self._closed.set()
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break

    def __iter__(self) -> Iterator[bytes]:
        while True:
            try:
                item = self._queue.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if self._closed.is_set():
                    raise TransferInterrupted("Transfer pipe closed while reading")
                continue
            if item is _EOF:
                self.complete = True
                return
            if isinstance(item, _Failure):
                raise item.error
            self.bytes_read += len(item)
            yield item


def _close(stream):
    close = getattr(stream, "close", None)
    if close is not None:
        close()


def transfer(
    source: Iterable[bytes],
    sink: Callable[[Iterable[bytes]], object],
    max_chunks: int = DEFAULT_MAX_CHUNKS,
) -> int:
    """Move all bytes of `source` into `sink`, return the number of bytes moved

    `source` is iterated on a separate thread while `sink` consumes the pipe
    on the calling thread. When the source fails the sink sees the error
    instead of the end of input. When the sink fails or stops reading the
    source is abandoned without waiting for a pending read, the pull thread
    closes it once that read returns. If both fail the source error is raised.
    """
    pipe = Pipe(max_chunks)
    failures: list[BaseException] = []
    chunks = iter(source)

    def pull():
        try:
            for chunk in chunks:
                if not chunk:
                    continue
                if not pipe.write(chunk):
                    logger.debug("Upload side is gone, stop reading")
                    return
        except BaseException as e:  # re-raised on the calling thread
            failures.append(e)
            pipe.finish(e)
        else:
            pipe.finish()
        finally:
            _close(chunks)

    puller = threading.Thread(target=pull, name="blob-pull", daemon=True)
    puller.start()
    sink_error = None
    try:
        sink(pipe)
    except Exception as e:
        sink_error = e
    finally:
        pipe.close()
        if pipe.complete:
            puller.join()
        else:
            # A source blocked in a read closes itself once the read returns
            puller.join(ABANDON_TIMEOUT)

    if failures:
        # The source error is the root cause, the sink may only have seen it
        if sink_error is None or sink_error is failures[0]:
            raise failures[0]
        raise failures[0] from sink_error
    if sink_error is not None:
        raise sink_error
    if not pipe.complete:
        raise TransferInterrupted(
            f"Upload finished after {pipe.bytes_read} bytes, "
            f"before the end of the blob"
        )
    return pipe.bytes_read
