"""
Confidence Calibrator.

Maps a signal vector (lexicon, proximity, zone prior, format, consensus)
to a calibrated probability.

    prior      = logistic(bias + sum(weight_i * signal_i))
    global     = (correct_g + prior * k) / (total_g + k)
    calibrated = (correct_v + global * k) / (total_v + k)

Counts are kept per (scope, signal signature, prior bucket), where scope
is a vendor id or the global scope. With no history the prior is
returned unchanged, so calibration never blocks extraction. Reviewer
outcomes are recorded on a single background thread and persisted
through the repository.
"""

import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, Optional, Sequence, Tuple

from config import get_config
from billflow.utils.logger import get_logger
from .candidates import SIGNAL_NAMES

logger = get_logger(__name__)

GLOBAL_SCOPE = "__global__"

DEFAULT_WEIGHTS = {
    'lexicon': 1.2,
    'proximity': 1.0,
    'zone_prior': 0.6,
    'format': 0.9,
    'consensus': 0.8,
}

BucketKey = Tuple[str, int, int]


def logistic(x: float) -> float:
    return 1.0 / (1.0 + math.exp(-x))


class ConfidenceCalibrator:
    """
    Per-vendor calibration curves with a global fallback.

    Example:
        >>> calibrator = ConfidenceCalibrator(repository)
        >>> calibrator.calibrate("acme", (1.0, 0.9, 1.0, 1.0, 0.0))
        0.83...
        >>> calibrator.record_outcome("acme", (1.0, 0.9, 1.0, 1.0, 0.0), was_correct=False)
    """

    def __init__(self, repository=None, weights: Optional[Dict[str, float]] = None,
                 bias: Optional[float] = None, async_updates: Optional[bool] = None) -> None:
        self.repository = repository
        self.weights = dict(DEFAULT_WEIGHTS)
        self.weights.update(get_config("extraction.signal_weights", {}) or {})
        if weights:
            self.weights.update(weights)
        self.bias = bias if bias is not None else get_config("extraction.bias", -2.0)
        self.bucket_size = get_config("calibration.bucket_size", 0.1)
        self.min_samples = get_config("calibration.min_samples", 5)
        self.recalibration_threshold = get_config("calibration.recalibration_threshold", 0.05)
        if async_updates is None:
            async_updates = get_config("calibration.async_updates", True)

        self._lock = threading.Lock()
        self._counts: Dict[BucketKey, Tuple[int, int]] = {}
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="calibration") if async_updates else None

        if repository is not None:
            for scope, signature, bucket, correct, total in repository.load_calibration():
                self._counts[(scope, signature, bucket)] = (correct, total)
            logger.debug(f"Loaded {len(self._counts)} calibration buckets")

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _vector(self, signals) -> Tuple[float, ...]:
        if isinstance(signals, dict):
            return tuple(float(signals.get(name, 0.0)) for name in SIGNAL_NAMES)
        values = tuple(float(v) for v in signals)
        if len(values) != len(SIGNAL_NAMES):
            raise ValueError(f"Expected {len(SIGNAL_NAMES)} signals, got {len(values)}")
        return values

    def prior(self, signals) -> float:
        """Uncalibrated logistic combination of the signals."""
        vector = self._vector(signals)
        score = self.bias + sum(self.weights[name] * value for name, value in zip(SIGNAL_NAMES, vector))
        return logistic(score)

    @staticmethod
    def signature(signals: Sequence[float]) -> int:
        """Bitmask of the signals that fired."""
        mask = 0
        for index, value in enumerate(signals):
            if value > 0:
                mask |= 1 << index
        return mask

    def _bucket(self, probability: float) -> int:
        return min(int(probability / self.bucket_size), int(round(1 / self.bucket_size)) - 1)

    def _key(self, scope: str, signals) -> BucketKey:
        vector = self._vector(signals)
        return (scope, self.signature(vector), self._bucket(self.prior(vector)))

    def calibrate(self, vendor_id: Optional[str], signals) -> float:
        """
        Calibrated probability for a signal vector. Side-effect free.

        Args:
            vendor_id: Vendor scope, None for global only.
            signals: Five signal values in SIGNAL_NAMES order, or a dict.
        """
        prior = self.prior(signals)
        k = self.min_samples

        with self._lock:
            g_correct, g_total = self._counts.get(self._key(GLOBAL_SCOPE, signals), (0, 0))
            v_correct, v_total = (0, 0)
            if vendor_id:
                v_correct, v_total = self._counts.get(self._key(vendor_id, signals), (0, 0))

        global_estimate = (g_correct + prior * k) / (g_total + k)
        estimate = (v_correct + global_estimate * k) / (v_total + k)
        return max(0.0, min(1.0, estimate))

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def record_outcome(self, vendor_id: Optional[str], signals, was_correct: bool) -> Optional[Future]:
        """
        Record whether a candidate with these signals was right.

        Runs on the background executor when async updates are enabled
        and returns its Future; otherwise applies the update inline.
        """
        vector = self._vector(signals)
        if self._executor is not None:
            return self._executor.submit(self._apply_outcome, vendor_id, vector, was_correct)
        self._apply_outcome(vendor_id, vector, was_correct)
        return None

    def _apply_outcome(self, vendor_id: Optional[str], signals: Tuple[float, ...], was_correct: bool) -> None:
        scopes = [GLOBAL_SCOPE] + ([vendor_id] if vendor_id else [])
        updated = []
        with self._lock:
            for scope in scopes:
                key = self._key(scope, signals)
                correct, total = self._counts.get(key, (0, 0))
                entry = (correct + (1 if was_correct else 0), total + 1)
                self._counts[key] = entry
                updated.append((key, entry))

        if self.repository is not None:
            for (scope, signature, bucket), (correct, total) in updated:
                self.repository.save_calibration_bucket(scope, signature, bucket, correct, total)

        logger.debug(f"Calibration outcome for {vendor_id or 'global'}: correct={was_correct}")

    def flush(self) -> None:
        """Wait for queued outcome updates."""
        if self._executor is not None:
            self._executor.submit(lambda: None).result()

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self, vendor_id: Optional[str] = None) -> Dict[str, float]:
        """
        Accuracy and expected calibration error of recorded outcomes.

        The predicted probability of a bucket is its prior bucket center.
        """
        scope = vendor_id or GLOBAL_SCOPE
        with self._lock:
            rows = [(key, value) for key, value in self._counts.items() if key[0] == scope]

        samples = sum(total for _, (_, total) in rows)
        if not samples:
            return {'samples': 0, 'accuracy': 0.0, 'expected_calibration_error': 0.0}

        correct = sum(c for _, (c, _) in rows)
        ece = 0.0
        for (_, _, bucket), (bucket_correct, bucket_total) in rows:
            predicted = (bucket + 0.5) * self.bucket_size
            ece += (bucket_total / samples) * abs(bucket_correct / bucket_total - predicted)

        return {
            'samples': samples,
            'accuracy': correct / samples,
            'expected_calibration_error': ece,
        }

    def needs_recalibration(self, vendor_id: Optional[str] = None) -> bool:
        result = self.stats(vendor_id)
        return (result['samples'] >= self.min_samples
                and result['expected_calibration_error'] > self.recalibration_threshold)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
