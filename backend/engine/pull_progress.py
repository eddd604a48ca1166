"""
Layer-by-layer tracking of image pull progress.

Consumes the decoded JSON lines of the engine's pull stream and produces
throttled PullProgress snapshots. Runs in the worker thread that reads the
stream, so it holds no asyncio state.
"""

import copy
import logging
import time
from typing import Any, Dict, Optional

from engine.errors import EngineError
from engine.types import PullProgress

logger = logging.getLogger(__name__)

# Emit at most every 500ms unless percent moved 5 points or a layer finished
BROADCAST_INTERVAL = 0.5
BROADCAST_PERCENT_STEP = 5


class PullTracker:
    """Aggregates pull stream lines into PullProgress snapshots."""

    def __init__(self, image: str, clock=time.monotonic):
        self.progress = PullProgress(image=image)
        self._clock = clock
        self._last_emit = 0.0
        self._last_percent = -BROADCAST_PERCENT_STEP

    def update(self, line: Dict[str, Any]) -> Optional[PullProgress]:
        """
        Fold one stream line into the running state.

        Args:
            line: Decoded JSON line from the pull stream

        Returns:
            A snapshot when one should be reported, else None

        Raises:
            EngineError: If the engine reported an error in the stream
        """
        if 'error' in line:
            detail = line.get('errorDetail', {}).get('message') or line['error']
            raise EngineError(f"Failed to pull {self.progress.image}", detail=detail)

        status = line.get('status', '')
        layer_id = line.get('id')

        # Non-layer messages; "Pulling from" carries the tag in its id field
        if not layer_id or status.startswith(('Pulling from', 'Digest:', 'Status:')):
            self.progress.status = status
            return None

        layers = self.progress.layers
        existing = layers.get(layer_id, {'current': 0, 'total': 0, 'status': ''})

        if status in ('Already exists', 'Pull complete', 'Download complete'):
            total = existing.get('total', 0)
            layers[layer_id] = {'status': status, 'current': total, 'total': total}
        else:
            detail = line.get('progressDetail') or {}
            total = detail.get('total') or existing.get('total', 0)
            current = detail.get('current', existing.get('current', 0))
            layers[layer_id] = {'status': status, 'current': current, 'total': total}

        self.progress.status = status
        return self._maybe_snapshot(finished_layer='complete' in status.lower() or status == 'Already exists')

    def _maybe_snapshot(self, finished_layer: bool) -> Optional[PullProgress]:
        now = self._clock()
        percent = self.progress.percent
        if (
            finished_layer
            or now - self._last_emit >= BROADCAST_INTERVAL
            or abs(percent - self._last_percent) >= BROADCAST_PERCENT_STEP
        ):
            self._last_emit = now
            self._last_percent = percent
            return copy.deepcopy(self.progress)
        return None

    def finish(self) -> PullProgress:
        """Final snapshot at 100%."""
        self.progress.done = True
        self.progress.status = 'Pull complete'
        logger.info(f"Pulled {self.progress.image} ({len(self.progress.layers)} layers)")
        return copy.deepcopy(self.progress)
