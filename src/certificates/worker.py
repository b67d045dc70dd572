"""Background certificate issuance.

When ``certificate_issuance_async`` is enabled the request that completes a
course does not wait for the certification service. The worker listens for
CourseCompletedEvent on the bus, queues it, and issues the certificate with
exponential backoff. The certificate id is then attached to the enrollment
through the progress service (version-checked save, CertificateIssued event).
"""

import asyncio
import random
from typing import TYPE_CHECKING

import structlog

from src.core.context import RequestContext
from src.progress.events import CourseCompletedEvent, DomainEvent
from src.progress.exceptions import ExternalServiceError

from .issuer import CertificateIssuer, IssuedCertificate, IssueCertificateParams


if TYPE_CHECKING:
    from src.core.events import DomainEventBus
    from src.progress.service import ProgressService

logger = structlog.get_logger(__name__)


class CertificateIssuanceWorker:
    """Queue-backed issuer with retry."""

    def __init__(
        self,
        issuer: CertificateIssuer,
        progress_service: "ProgressService",
        max_retries: int = 5,
        base_delay: float = 1.0,
        queue_size: int = 1000,
        poll_interval: float = 1.0,
    ) -> None:
        self.issuer = issuer
        self.progress_service = progress_service
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.poll_interval = poll_interval

        self._queue: asyncio.Queue[CourseCompletedEvent] = asyncio.Queue(
            maxsize=queue_size
        )
        self._running = False
        self._worker_task: asyncio.Task | None = None

    def register(self, bus: "DomainEventBus") -> None:
        bus.subscribe(CourseCompletedEvent, self.enqueue)

    async def enqueue(self, event: DomainEvent) -> None:
        if not isinstance(event, CourseCompletedEvent) or event.certificate_issued:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error(
                "certificate_queue_full",
                enrollment_id=str(event.aggregate_id),
                queue_size=self._queue.maxsize,
            )

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._worker_task = asyncio.create_task(
            self._worker_loop(), name="certificate_worker"
        )
        logger.info("certificate_worker_started", max_retries=self.max_retries)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._worker_task:
            try:
                await asyncio.wait_for(self._worker_task, timeout=5.0)
            except TimeoutError:
                logger.warning("certificate_worker_stop_timeout")
                self._worker_task.cancel()
            except asyncio.CancelledError:
                pass

        logger.info("certificate_worker_stopped", pending=self._queue.qsize())

    async def _worker_loop(self) -> None:
        while self._running:
            try:
                event = await asyncio.wait_for(
                    self._queue.get(), timeout=self.poll_interval
                )
            except TimeoutError:
                continue

            try:
                with RequestContext(
                    user_id=event.student_id,
                    tenant_id=event.tenant_id,
                    correlation_id=str(event.event_id),
                ):
                    await self.process(event)
            except Exception:
                logger.exception(
                    "certificate_worker_error",
                    enrollment_id=str(event.aggregate_id),
                )
            finally:
                self._queue.task_done()

    # ==========================================================================
    # Processing
    # ==========================================================================

    async def process(self, event: CourseCompletedEvent) -> str | None:
        """Issue and attach the certificate for one completed enrollment.

        Returns:
            The certificate id, or None if nothing was issued.
        """
        params = await self.progress_service.certificate_params_for(event.aggregate_id)
        if params is None:
            return None

        certificate = await self._issue_with_retry(params)
        if certificate is None:
            return None

        await self.progress_service.attach_certificate(
            event.aggregate_id, certificate.id
        )
        return certificate.id

    async def _issue_with_retry(
        self, params: IssueCertificateParams
    ) -> IssuedCertificate | None:
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self.issuer.issue(params)
            except ExternalServiceError as e:
                if attempt == self.max_retries:
                    logger.error(
                        "certificate_issuance_abandoned",
                        enrollment_id=str(params.enrollment_id),
                        attempts=attempt,
                        error=e.message,
                    )
                    return None

                wait = self._backoff_delay(attempt)
                logger.warning(
                    "certificate_issuance_retry",
                    enrollment_id=str(params.enrollment_id),
                    attempt=attempt,
                    wait_seconds=round(wait, 2),
                    error=e.message,
                )
                await asyncio.sleep(wait)
        return None

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with jitter."""
        base = self.base_delay * (2 ** (attempt - 1))
        return base + random.uniform(0, base * 0.5)
