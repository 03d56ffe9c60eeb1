from __future__ import annotations

import io
import logging
import multiprocessing
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Sequence

from PyPDF2 import PdfReader


logger = logging.getLogger("coursecert.certgen")

PDF_SIGNATURE = b"%PDF"
DOCX_SIGNATURE = b"PK\x03\x04"
FORMAT_PDF = "pdf"
FORMAT_DOCX = "docx"
CONTENT_TYPES = {
    FORMAT_PDF: "application/pdf",
    FORMAT_DOCX: "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}

DEFAULT_STRATEGY_ORDER: tuple[str, ...] = (
    "libreoffice",
    "weasyprint",
    "reportlab",
    "passthrough",
)
DEFAULT_TIMEOUT = 60.0
DEFAULT_MAX_OUTPUT_BYTES = 50 * 1024 * 1024


class ConversionError(RuntimeError):
    pass


class ConversionTimeout(ConversionError):
    pass


class OutputValidationError(ConversionError):
    pass


class ConversionExhausted(ConversionError):
    def __init__(self, message: str, attempts: Sequence[tuple[str, str]] = ()):
        super().__init__(message)
        self.attempts = list(attempts)


@dataclass(frozen=True)
class ConversionSettings:
    strategies: tuple[str, ...] = DEFAULT_STRATEGY_ORDER
    timeout: float = DEFAULT_TIMEOUT
    allow_docx: bool = True
    max_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    soffice_path: Optional[str] = None
    weasyprint_path: Optional[str] = None
    isolate: bool = False


@dataclass(frozen=True)
class ProjectionPage:
    """Data for one certificate page when a strategy renders from bound values."""

    values: Mapping[str, str]
    photo: Optional[bytes] = None


@dataclass
class ConversionJob:
    document: bytes
    pages: list[ProjectionPage] = field(default_factory=list)
    title: str = "Certificate"


@dataclass
class ConversionOutcome:
    data: bytes
    output_format: str
    method: str
    attempts: list[tuple[str, str]] = field(default_factory=list)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES[self.output_format]


def detect_format(data: bytes | None) -> Optional[str]:
    if not data:
        return None
    if data.startswith(PDF_SIGNATURE):
        return FORMAT_PDF
    if data.startswith(DOCX_SIGNATURE):
        return FORMAT_DOCX
    return None


def validate_output(
    data: bytes | None,
    allow_docx: bool = False,
    max_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> str:
    """Return the output format or raise ``OutputValidationError``."""
    if not data:
        raise OutputValidationError("Conversion produced an empty file")
    if len(data) > max_bytes:
        raise OutputValidationError(
            f"Conversion output is too large ({len(data)} bytes > {max_bytes})"
        )
    fmt = detect_format(data)
    if fmt == FORMAT_PDF:
        try:
            pages = len(PdfReader(io.BytesIO(data)).pages)
        except Exception as exc:
            raise OutputValidationError(f"PDF output is unreadable: {exc}") from exc
        if pages < 1:
            raise OutputValidationError("PDF output has no pages")
        return fmt
    if fmt == FORMAT_DOCX:
        if not allow_docx:
            raise OutputValidationError("DOCX output is not accepted without relaxed mode")
        return fmt
    raise OutputValidationError("Invalid file format - not PDF or DOCX")


def call_with_timeout(fn: Callable[[], bytes], timeout: float, label: str) -> bytes:
    """Run an in-process conversion with an upper bound on the wait.

    A worker thread cannot be killed: on timeout the caller moves on and the
    thread is left to finish. Use ``call_in_subprocess`` when a hung render
    must be terminated.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"certconv-{label}")
    try:
        future = executor.submit(fn)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            future.cancel()
            raise ConversionTimeout(f"{label} timed out after {timeout:g}s")
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def _isolated_convert(strategy, job: ConversionJob, timeout: float, conn) -> None:
    try:
        conn.send((True, strategy.convert(job, timeout)))
    except Exception as exc:
        conn.send((False, f"{exc.__class__.__name__}: {exc}"))
    finally:
        conn.close()


def call_in_subprocess(strategy, job: ConversionJob, timeout: float, label: str) -> bytes:
    """Run ``strategy.convert`` in a spawned child that is killed when it overruns."""
    ctx = multiprocessing.get_context("spawn")
    receiver, sender = ctx.Pipe(duplex=False)
    process = ctx.Process(
        target=_isolated_convert,
        args=(strategy, job, timeout, sender),
        name=f"certconv-{label}",
        daemon=True,
    )
    process.start()
    sender.close()
    try:
        if not receiver.poll(timeout):
            raise ConversionTimeout(f"{label} timed out after {timeout:g}s")
        try:
            ok, payload = receiver.recv()
        except EOFError as exc:
            raise ConversionError(f"{label} worker exited without a result") from exc
    finally:
        if process.is_alive():
            logger.warning("[CERT-CONVERT] strategy=%s killing worker pid=%s", label, process.pid)
            process.kill()
        process.join()
        receiver.close()
    if not ok:
        raise ConversionError(f"{label} failed: {payload}")
    return payload


class ConversionPipeline:
    """Ordered, capability-checked conversion strategies; first valid output wins."""

    def __init__(self, strategies: Sequence, settings: ConversionSettings):
        self.strategies = list(strategies)
        self.settings = settings

    @property
    def names(self) -> list[str]:
        return [strategy.name for strategy in self.strategies]

    def available(self) -> list[str]:
        return [strategy.name for strategy in self.strategies if strategy.is_available()]

    def _attempt(self, strategy, job: ConversionJob) -> bytes:
        if getattr(strategy, "in_process", False) and self.settings.isolate:
            return call_in_subprocess(strategy, job, self.settings.timeout, strategy.name)
        if getattr(strategy, "in_process", False):
            return call_with_timeout(
                lambda: strategy.convert(job, self.settings.timeout),
                self.settings.timeout,
                strategy.name,
            )
        return strategy.convert(job, self.settings.timeout)

    def convert(self, job: ConversionJob) -> ConversionOutcome:
        attempts: list[tuple[str, str]] = []
        last_error: Optional[Exception] = None
        for strategy in self.strategies:
            if not strategy.is_available():
                attempts.append((strategy.name, "unavailable"))
                continue
            try:
                data = self._attempt(strategy, job)
                fmt = validate_output(
                    data,
                    allow_docx=self.settings.allow_docx and getattr(strategy, "relaxed", False),
                    max_bytes=self.settings.max_bytes,
                )
            except Exception as exc:
                last_error = exc
                attempts.append((strategy.name, str(exc) or exc.__class__.__name__))
                logger.warning("[CERT-CONVERT] strategy=%s failed: %s", strategy.name, exc)
                continue
            attempts.append((strategy.name, "ok"))
            logger.info(
                "[CERT-CONVERT] strategy=%s format=%s size=%s", strategy.name, fmt, len(data)
            )
            return ConversionOutcome(
                data=data, output_format=fmt, method=strategy.name, attempts=attempts
            )
        if last_error is None:
            raise ConversionExhausted("No conversion strategy is available", attempts)
        raise ConversionExhausted(
            f"All conversion strategies failed; last error: {last_error}", attempts
        ) from last_error


def build_pipeline(settings: ConversionSettings) -> ConversionPipeline:
    from .converters import build_strategy

    strategies = [build_strategy(name, settings) for name in settings.strategies]
    return ConversionPipeline(strategies, settings)
