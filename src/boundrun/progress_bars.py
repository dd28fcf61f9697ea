"""Terminal progress bars for batch runs.

Provides :class:`TqdmProgressSink`, a :class:`~boundrun.progress.ProgressSink`
that draws one `tqdm <https://tqdm.github.io/>`_ bar per running item and
a summary bar pinned below them.  Install the optional dependency with::

    pip install boundrun[progress]

The :func:`resolve_sink` helper is used internally by the schedulers to
accept ``sink="tqdm"`` as a convenience shorthand.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from typing import Any

from .progress import IndicatorHandle, NullSink, ProgressSink

logger = logging.getLogger(__name__)

DEFAULT_BAR_FORMAT = "[{elapsed}] {bar:50} {n_fmt:>7}/{total_fmt:7} {desc}"


class TqdmProgressSink(ProgressSink):
    """Render indicators as stacked tqdm bars.

    The aggregate bar sits at line ``max_active``.  Item bars take the
    lowest free line above it and give the line back when they finish, so
    the summary stays at the bottom while items come and go.  If more than
    *max_active* item bars are open at once, the extra ones are drawn below
    the summary.

    Args:
        max_active: Number of lines reserved for item bars, normally the
            concurrency cap.
        bar_format: tqdm bar format string shared by every bar.
        file: Output stream (default: ``sys.stderr``).
        **tqdm_kwargs: Extra keyword arguments forwarded to :class:`tqdm.tqdm`.

    Raises:
        ImportError: If tqdm is not installed.

    Example::

        from boundrun import run_batch, make_items
        from boundrun.progress_bars import TqdmProgressSink

        with TqdmProgressSink(max_active=3) as sink:
            asyncio.run(run_batch(make_items(10, 100), 3, sink=sink))
    """

    def __init__(
        self,
        max_active: int,
        *,
        bar_format: str = DEFAULT_BAR_FORMAT,
        file: Any = None,
        **tqdm_kwargs: Any,
    ) -> None:
        super().__init__()
        self._tqdm = _import_tqdm()
        self.max_active = max_active
        self._bar_format = bar_format
        self._file = file
        self._tqdm_kwargs = tqdm_kwargs
        self._bars: dict[int, Any] = {}
        self._lines: dict[int, int] = {}
        self._free_lines = list(range(max_active))

    def _render_create(self, handle: IndicatorHandle, index: int) -> None:
        if handle.aggregate:
            line = self.max_active
        elif self._free_lines:
            line = self._free_lines.pop(0)
        else:
            used = set(self._lines.values())
            line = next(n for n in itertools.count(self.max_active + 1) if n not in used)
            logger.debug("No free bar line for indicator %d; drawing it at %d", handle.key, line)
        self._lines[handle.key] = line
        self._bars[handle.key] = self._tqdm(
            total=handle.length,
            position=line,
            leave=handle.aggregate,
            bar_format=self._bar_format,
            ascii="-#",
            file=self._file,
            **self._tqdm_kwargs,
        )

    def _render_advance(self, handle: IndicatorHandle, delta: int) -> None:
        self._bars[handle.key].update(delta)

    def _render_message(self, handle: IndicatorHandle, text: str) -> None:
        self._bars[handle.key].set_description_str(text)

    def _render_finish(self, handle: IndicatorHandle, text: str) -> None:
        bar = self._bars.pop(handle.key)
        bar.set_description_str(text, refresh=False)
        bar.refresh()
        bar.close()
        line = self._lines.pop(handle.key)
        if line < self.max_active:
            self._free_lines.append(line)
            self._free_lines.sort()

    def _render_close(self) -> None:
        for bar in self._bars.values():
            bar.close()
        self._bars.clear()


def resolve_sink(
    sink: ProgressSink | str | None,
    max_active: int,
) -> tuple[ProgressSink, Callable[[], None] | None]:
    """Resolve a ``sink`` argument into a concrete sink.

    Used internally by the schedulers.  Users should not call this directly.

    Accepts:
    - ``None`` -- a :class:`~boundrun.progress.NullSink`.
    - A :class:`~boundrun.progress.ProgressSink` -- used directly.
    - ``"tqdm"`` -- creates a :class:`TqdmProgressSink` (requires
      ``boundrun[progress]``).

    Returns:
        A ``(sink, cleanup)`` pair.  *cleanup* is ``None`` unless a tqdm
        sink was created, in which case it must be called after the batch
        to close the bars.

    Raises:
        ImportError: If ``"tqdm"`` is requested but tqdm is not installed.
        ValueError: If the string value is not ``"tqdm"``.
        TypeError: For any other kind of value.
    """
    if sink is None:
        return NullSink(), None

    if isinstance(sink, str):
        if sink != "tqdm":
            msg = f"sink must be 'tqdm', a ProgressSink, or None -- got {sink!r}"
            raise ValueError(msg)
        created = TqdmProgressSink(max_active)
        return created, created.close

    if isinstance(sink, ProgressSink):
        return sink, None

    msg = f"sink must be 'tqdm', a ProgressSink, or None -- got {type(sink).__name__}"
    raise TypeError(msg)


def _import_tqdm() -> type:
    """Import tqdm, raising a helpful error if unavailable."""
    try:
        from tqdm.auto import tqdm  # type: ignore[import-not-found]
    except ImportError:
        msg = "tqdm is required for built-in progress bars. Install it with: pip install boundrun[progress]"
        raise ImportError(msg) from None
    return tqdm  # type: ignore[no-any-return]
