"""
Multi-Pass OCR Orchestrator.

Runs one or more OCR profiles over every content zone of a document and
reconciles the passes into a consensus text layer per zone.

    - masks are burned into the page before any crop reaches the backend
    - zones fan out over a bounded thread pool and are joined before the
      caller sees any result
    - backend unavailability is retried with bounded exponential backoff
    - targeted re-OCR of a sub-region is bounded by a timeout and is
      cancelled when it expires

Usage:
    from billflow.ocr_engine import MultiPassOrchestrator, TesseractBackend

    orchestrator = MultiPassOrchestrator(TesseractBackend())
    readings = orchestrator.run_document(pages, zones, masks)
"""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError, as_completed
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from PIL import Image

from config import get_config
from billflow.input_handler.document import NormalizedPage
from billflow.layout.geometry import BoundingBox, PixelBox
from billflow.layout.masks import Mask, apply_masks, masks_for_page
from billflow.layout.zones import Zone, ZoneLabel
from billflow.utils.exceptions import OcrBackendUnavailableError, OcrTimeoutError
from billflow.utils.helpers import generate_id
from billflow.utils.logger import get_logger
from .consensus import ConsensusResult, reconcile
from .ocr_result import ImageRegion, OCRResult, OCRToken
from .profiles import OcrProfile, default_profiles, parse_profiles, profile_settings, weights_by_name

logger = get_logger(__name__)

# Confidence assigned to words read from an embedded PDF text layer
TEXT_LAYER_CONFIDENCE = 0.99


class MultiPassOrchestrator:
    """
    Coordinates OCR passes and consensus for a document.

    Attributes:
        backend: Object with ``name`` and ``recognize(region, profile)``
        workers: Size of the zone thread pool
        retry_attempts: Backend calls per pass before giving up
        base_delay: First backoff delay in seconds
        max_delay: Upper bound for a single backoff delay
        reocr_timeout: Default timeout for targeted re-OCR in seconds

    Example:
        >>> orchestrator = MultiPassOrchestrator(backend, workers=2)
        >>> readings = orchestrator.run_document(pages, zones, masks=[])
        >>> readings[zone.zone_id].text
        'Invoice # INV-1001'
    """

    def __init__(
        self,
        backend,
        workers: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        reocr_timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep
    ) -> None:
        self.backend = backend
        self.workers = workers or get_config("ocr.workers", 4)
        self.retry_attempts = max(1, retry_attempts or get_config("ocr.retry.attempts", 3))
        self.base_delay = base_delay if base_delay is not None else get_config("ocr.retry.base_delay", 0.5)
        self.max_delay = max_delay if max_delay is not None else get_config("ocr.retry.max_delay", 8.0)
        self.reocr_timeout = reocr_timeout or get_config("ocr.reocr_timeout", 5.0)
        self.high_confidence = get_config("ocr.consensus.high_confidence", 0.8)
        self.min_agreeing = get_config("ocr.consensus.min_agreeing_passes", 2)
        self.skip_ocr_with_text_layer = get_config("ocr.skip_ocr_with_text_layer", True)
        self._sleep = sleep
        self._reocr_executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="reocr")

        logger.debug(
            f"OCR orchestrator ready: backend={getattr(backend, 'name', type(backend).__name__)}, "
            f"workers={self.workers}, attempts={self.retry_attempts}"
        )

    # ------------------------------------------------------------------
    # Backend calls
    # ------------------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.max_delay, self.base_delay * (2 ** attempt))

    def recognize_with_retry(self, region: ImageRegion, profile: OcrProfile) -> OCRResult:
        """
        Call the backend, retrying only when it reports itself unavailable.

        Raises:
            OcrBackendUnavailableError: After the last attempt fails.
        """
        last_error = None
        for attempt in range(self.retry_attempts):
            try:
                return self.backend.recognize(region, profile)
            except OcrBackendUnavailableError as e:
                last_error = e
                if attempt + 1 < self.retry_attempts:
                    delay = self.backoff_delay(attempt)
                    logger.warning(
                        f"OCR backend unavailable (attempt {attempt + 1}/{self.retry_attempts}), "
                        f"retrying in {delay:.2f}s: {e.message}"
                    )
                    self._sleep(delay)
        logger.error(f"OCR backend unavailable after {self.retry_attempts} attempts")
        raise last_error

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def run_pass(self, image: Image.Image, page_index: int, box: PixelBox,
                 profile: OcrProfile) -> OCRResult:
        """
        One backend pass over a page region.

        Args:
            image: Page image with masks already applied.
            page_index: Page number.
            box: Region in page pixels.
            profile: OCR profile.

        Returns:
            OCRResult with token boxes in page pixels.
        """
        settings = profile_settings(profile)
        x1, y1, x2, y2 = box
        if x2 - x1 < 2 or y2 - y1 < 2:
            return OCRResult(profile=settings.profile.value, page_index=page_index)

        crop = image.crop(box)
        if settings.scale != 1.0:
            crop = crop.resize(
                (max(1, int(crop.width * settings.scale)), max(1, int(crop.height * settings.scale))),
                Image.LANCZOS,
            )

        region = ImageRegion(image=crop, page_index=page_index, box=box, scale=settings.scale)
        result = self.recognize_with_retry(region, settings.profile)
        return result.mapped_to_page(region)

    @staticmethod
    def text_layer_pass(page: NormalizedPage, box: PixelBox, masks: Sequence[Mask]) -> Optional[OCRResult]:
        """Embedded text layer words inside a region, as a pseudo OCR pass."""
        if not page.has_text_layer:
            return None

        masked = [m.bbox.to_pixels(page.width, page.height) for m in masks_for_page(masks, page.page_index)]
        tokens = []
        for word in page.text_layer:
            cx = (word.bbox[0] + word.bbox[2]) / 2.0
            cy = (word.bbox[1] + word.bbox[3]) / 2.0
            if not (box[0] <= cx <= box[2] and box[1] <= cy <= box[3]):
                continue
            if any(m[0] <= cx <= m[2] and m[1] <= cy <= m[3] for m in masked):
                continue
            tokens.append(OCRToken(
                text=word.text,
                bbox=word.bbox,
                confidence=TEXT_LAYER_CONFIDENCE,
                word_index=len(tokens),
            ))
        return OCRResult(
            tokens=tokens,
            profile=OcrProfile.TEXT_LAYER.value,
            engine="pdf_text_layer",
            page_index=page.page_index,
        )

    def read_region(
        self,
        page: NormalizedPage,
        bbox: BoundingBox,
        masks: Sequence[Mask],
        profiles: Iterable[Union[OcrProfile, str]],
        zone_id: Optional[str] = None,
        masked_image: Optional[Image.Image] = None,
        prior_passes: Sequence[OCRResult] = ()
    ) -> ConsensusResult:
        """
        Run every requested profile over one region and reconcile.

        Args:
            page: Normalized page.
            bbox: Region to read.
            masks: Masks to burn in before OCR.
            profiles: Profiles to run.
            zone_id: Zone the region belongs to.
            masked_image: Page image with masks applied, if already computed.
            prior_passes: Earlier passes that overlap the region; they vote too.
        """
        box = bbox.to_pixels(page.width, page.height)
        image = masked_image if masked_image is not None else apply_masks(page.image, masks, page.page_index)

        passes: List[OCRResult] = []
        text_pass = self.text_layer_pass(page, box, masks)
        if text_pass is not None:
            passes.append(text_pass)

        for profile in parse_profiles(profiles):
            passes.append(self.run_pass(image, page.page_index, box, profile))

        for prior in prior_passes:
            if prior.profile not in {p.profile for p in passes}:
                passes.append(prior.within(box))

        for result in passes:
            result.zone_id = zone_id

        return reconcile(
            passes,
            weights_by_name(),
            high_confidence=self.high_confidence,
            min_agreeing=self.min_agreeing,
            zone_id=zone_id,
            page_index=page.page_index,
        )

    def run_zone(
        self,
        page: NormalizedPage,
        zone: Zone,
        masks: Sequence[Mask],
        profiles: Sequence[OcrProfile],
        masked_image: Optional[Image.Image] = None
    ) -> ConsensusResult:
        """Consensus reading of one zone."""
        if page.has_text_layer and self.skip_ocr_with_text_layer:
            profiles = []
        reading = self.read_region(page, zone.bbox, masks, profiles,
                                   zone_id=zone.zone_id, masked_image=masked_image)
        logger.debug(
            f"Zone {zone.zone_id} ({zone.label.value}, page {page.page_index}): "
            f"{len(reading.tokens)} tokens from {reading.pass_count} passes"
        )
        return reading

    # ------------------------------------------------------------------
    # Document level
    # ------------------------------------------------------------------

    def run_document(
        self,
        pages: Sequence[NormalizedPage],
        zones: Sequence[Zone],
        masks: Sequence[Mask] = (),
        profiles: Optional[Iterable[Union[OcrProfile, str]]] = None
    ) -> Dict[str, ConsensusResult]:
        """
        OCR every content zone of a document.

        Zones fan out over the thread pool; the call returns only after
        every zone has finished (join point for candidate generation).

        Args:
            pages: Normalized pages.
            zones: Active zones. Noise zones are skipped.
            masks: Masks applicable to this document.
            profiles: Profiles to run; configured defaults when None.

        Returns:
            Dictionary mapping zone_id to its ConsensusResult. All results
            of one call share a generation id.

        Raises:
            OcrBackendUnavailableError: When retries are exhausted for any zone.
        """
        profile_list = parse_profiles(profiles) if profiles is not None else default_profiles()
        generation_id = generate_id("gen")
        pages_by_index = {p.page_index: p for p in pages}
        masked_images = {
            p.page_index: apply_masks(p.image, masks, p.page_index) for p in pages
        }

        work = [z for z in zones if z.label != ZoneLabel.NOISE and z.page_index in pages_by_index]
        logger.info(
            f"Running OCR on {len(work)} zones ({', '.join(p.value for p in profile_list)}) "
            f"with {self.workers} workers"
        )

        results: Dict[str, ConsensusResult] = {}
        start_time = time.time()
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="ocr") as executor:
            futures = {
                executor.submit(
                    self.run_zone,
                    pages_by_index[zone.page_index],
                    zone,
                    masks,
                    profile_list,
                    masked_images[zone.page_index],
                ): zone
                for zone in work
            }
            try:
                for future in as_completed(futures):
                    reading = future.result()
                    reading.generation_id = generation_id
                    results[futures[future].zone_id] = reading
            except OcrBackendUnavailableError:
                for future in futures:
                    future.cancel()
                raise

        logger.info(f"OCR finished for {len(results)} zones in {time.time() - start_time:.2f}s")
        return results

    def targeted_reocr(
        self,
        page: NormalizedPage,
        bbox: BoundingBox,
        masks: Sequence[Mask],
        profile: Union[OcrProfile, str],
        zone_id: Optional[str] = None,
        prior_passes: Sequence[OCRResult] = (),
        timeout: Optional[float] = None
    ) -> ConsensusResult:
        """
        Re-read a sub-region with one profile, bounded by a timeout.

        The new pass is reconciled with any earlier passes over the same
        region so both readings compete.

        Raises:
            OcrTimeoutError: The pass did not finish in time; it is cancelled.
            OcrBackendUnavailableError: Retries exhausted.
        """
        timeout = timeout or self.reocr_timeout
        future = self._reocr_executor.submit(
            self.read_region, page, bbox, masks, [profile],
            zone_id=zone_id, prior_passes=prior_passes,
        )
        try:
            reading = future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(f"Targeted re-OCR timed out after {timeout:.1f}s on page {page.page_index}")
            raise OcrTimeoutError(f"page {page.page_index} {bbox.to_dict()}", timeout)

        reading.generation_id = generate_id("gen")
        logger.info(
            f"Targeted re-OCR ({OcrProfile(profile).value}) on page {page.page_index}: "
            f"{len(reading.tokens)} tokens"
        )
        return reading

    def shutdown(self) -> None:
        self._reocr_executor.shutdown(wait=False)
