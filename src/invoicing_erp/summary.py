"""Natural-language sales summary collaborator.

The summary service is the only asynchronous piece of the toolkit. It turns
the invoice collection into a short prose analysis using an OpenAI-compatible
chat completions endpoint. The blocking HTTP call runs in a worker thread so
the caller's event loop stays responsive, and it never touches persisted data.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import requests

from . import core_logic, data_manager, log
from .exceptions import CollaboratorError


class SummaryService(Protocol):
    """Anything able to describe an invoice collection in prose."""

    async def summarize(self, invoices: Sequence[data_manager.InvoiceRow]) -> str: ...


def build_summary_prompt(invoices: Sequence[data_manager.InvoiceRow], *, currency: str = "MXN") -> str:
    """Render the sales metrics of ``invoices`` as an analysis request."""

    report = core_logic.calculate_sales_report(invoices)
    breakdown = core_logic.calculate_status_breakdown(invoices)
    lines = [
        "You are a financial assistant for a small business.",
        "Analyse the following invoicing data and give a brief summary of sales",
        "performance with one or two concrete recommendations.",
        "",
        f"Total sales: {core_logic.format_currency(report.total_sales, currency)}",
        f"Invoices issued: {report.invoice_count}",
        f"Average ticket: {core_logic.format_currency(report.average_ticket, currency)}",
    ]
    for status, totals in breakdown.items():
        lines.append(
            f"{status.value.capitalize()} invoices: {totals.count} "
            f"({core_logic.format_currency(totals.amount, currency)})"
        )
    if report.series:
        lines.append("Daily sales:")
        lines.extend(
            f"- {point.date.isoformat()}: {core_logic.format_currency(point.amount, currency)}"
            for point in report.series
        )
    return "\n".join(lines)


def _message_content(data: object) -> str:
    """Pull ``choices[0].message.content`` out of a chat completions body.

    Raises:
        CollaboratorError: If the body does not have that shape or the content
            is blank.
    """
    choices = data.get("choices") if isinstance(data, dict) else None
    if not isinstance(choices, list) or not choices:
        raise CollaboratorError("Summary service returned no choices")
    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        raise CollaboratorError("Summary service returned a malformed message")
    if not content.strip():
        raise CollaboratorError("Summary service returned an empty message")
    return content.strip()


class HttpSummaryService:
    """:class:`SummaryService` backed by a chat completions HTTP endpoint."""

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        *,
        model: str = data_manager.SummarySettings.model,
        timeout: float = data_manager.SummarySettings.timeout,
        currency: str = "MXN",
        session: Optional[requests.Session] = None,
    ) -> None:
        self.endpoint = endpoint
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.currency = currency
        self._session = session or requests.Session()

    def _post(self, prompt: str) -> str:
        try:
            response = self._session.post(
                self.endpoint,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model,
                    "messages": [{"role": "user", "content": prompt}],
                    "temperature": 0.2,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout as exc:
            raise CollaboratorError(f"Summary service timed out after {self.timeout}s") from exc
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise CollaboratorError(f"Summary service request failed: {exc}") from exc

        return _message_content(data)

    async def summarize(self, invoices: Sequence[data_manager.InvoiceRow]) -> str:
        prompt = build_summary_prompt(invoices, currency=self.currency)
        log.info("Requesting sales summary from %s (model=%s)", self.endpoint, self.model)
        return await asyncio.to_thread(self._post, prompt)


def service_from_settings(settings: data_manager.SummarySettings, *, currency: str = "MXN") -> HttpSummaryService:
    """Create an :class:`HttpSummaryService` from ``[Summary]`` settings.

    Raises:
        CollaboratorError: If the endpoint or API key is not configured.
    """
    if not settings.enabled:
        raise CollaboratorError("Summary service is not configured; set [Summary] Endpoint and ApiKey")
    return HttpSummaryService(
        settings.endpoint,
        settings.api_key,
        model=settings.model,
        timeout=settings.timeout,
        currency=currency,
    )


@dataclass
class SalesAnalysis:
    """Holds the most recent successful summary text."""

    text: str = ""

    async def refresh(
        self,
        service: SummaryService,
        invoices: Sequence[data_manager.InvoiceRow],
        *,
        timeout: Optional[float] = None,
    ) -> str:
        """Ask ``service`` for a new summary and keep it on success.

        Args:
            service (SummaryService): Collaborator producing the text.
            invoices (Sequence[InvoiceRow]): Collection to summarise.
            timeout (float | None): Seconds to wait before giving up; no
                limit when ``None``.

        Returns:
            str: The new summary text.

        Raises:
            CollaboratorError: If the service fails, times out, or returns
                something other than text. ``text`` keeps its previous value.
                Cancellation propagates unchanged.
        """
        try:
            text = await asyncio.wait_for(service.summarize(invoices), timeout=timeout)
        except asyncio.TimeoutError as exc:
            log.warning("Sales summary timed out after %ss; keeping previous analysis", timeout)
            raise CollaboratorError(f"Summary service timed out after {timeout}s") from exc
        except CollaboratorError as exc:
            log.warning("Sales summary failed: %s; keeping previous analysis", exc)
            raise
        except Exception as exc:
            log.warning("Sales summary failed unexpectedly: %r; keeping previous analysis", exc)
            raise CollaboratorError(f"Summary service failed: {exc}") from exc
        if not isinstance(text, str):
            raise CollaboratorError(f"Summary service returned {type(text).__name__}, expected text")
        self.text = text
        log.info("Sales summary refreshed (%d characters)", len(text))
        return text
