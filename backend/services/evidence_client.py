"""
Evidence Pipeline Client - web evidence retrieval over HTTP.

The pipeline service owns crawling, ranking and the sufficiency
judgment. This client posts one turn's prompt and reads back either a
single JSON result or an NDJSON stream of progress lines followed by a
result line:

    {"progress": {"stage": "search", "query": "..."}}
    {"result": {"queries": [...], "chunks": [...], "sources": [...],
                "gate": {"enoughEvidence": true}, "skipped": false}}
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from errors import ExternalServiceError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass
class EvidenceChunk:
    text: str
    url: str
    title: str = ""
    domain: str = ""
    score: float = 0.0


@dataclass
class EvidenceResult:
    queries: List[str] = field(default_factory=list)
    chunks: List[EvidenceChunk] = field(default_factory=list)
    sources: List[Dict[str, Any]] = field(default_factory=list)
    enough_evidence: bool = False
    skipped: bool = False
    skip_reason: Optional[str] = None


def parse_evidence_result(data: Dict[str, Any]) -> EvidenceResult:
    """Build an EvidenceResult from the pipeline's JSON payload."""
    chunks = []
    for raw in data.get("chunks") or []:
        if not isinstance(raw, dict) or not raw.get("text"):
            continue
        chunks.append(
            EvidenceChunk(
                text=str(raw["text"]),
                url=str(raw.get("url") or ""),
                title=str(raw.get("title") or ""),
                domain=str(raw.get("domain") or ""),
                score=float(raw.get("score") or 0.0),
            )
        )
    gate = data.get("gate") if isinstance(data.get("gate"), dict) else {}
    return EvidenceResult(
        queries=[str(q) for q in data.get("queries") or []],
        chunks=chunks,
        sources=[s for s in data.get("sources") or [] if isinstance(s, dict)],
        enough_evidence=bool(gate.get("enoughEvidence")),
        skipped=bool(data.get("skipped")),
        skip_reason=data.get("skipReason"),
    )


class EvidenceClient:
    """HTTP client for the web-evidence pipeline service."""

    def __init__(self, base_url: str, timeout: float = 12.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def run(
        self,
        prompt: str,
        recent_turns: List[Dict[str, Any]],
        locale: Optional[str],
        current_date: str,
        preferred_sources: Optional[List[str]] = None,
        force: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> EvidenceResult:
        """Run the pipeline for one prompt.

        Raises:
            ExternalServiceError: Timeout, connection failure, bad status or bad payload
        """
        body: Dict[str, Any] = {
            "prompt": prompt,
            "recentTurns": recent_turns,
            "locale": locale,
            "currentDate": current_date,
            "force": force,
        }
        if preferred_sources:
            body["preferredSources"] = preferred_sources

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                async with client.stream("POST", f"{self.base_url}/pipeline", json=body) as response:
                    if response.status_code >= 400:
                        raise ExternalServiceError(
                            "Evidence pipeline error",
                            details=f"Pipeline returned status {response.status_code}",
                            service="evidence",
                            status_code=response.status_code,
                        )
                    content_type = response.headers.get("content-type", "")
                    if "ndjson" in content_type:
                        return await self._read_stream(response, on_progress)
                    payload = json.loads(await response.aread())
                    return parse_evidence_result(payload.get("result", payload))
        except httpx.TimeoutException as e:
            raise ExternalServiceError(
                "Evidence pipeline timed out",
                details=f"No result within {self.timeout}s",
                service="evidence",
            ) from e
        except httpx.RequestError as e:
            raise ExternalServiceError(
                "Evidence pipeline unavailable",
                details="Could not connect to the evidence pipeline",
                service="evidence",
            ) from e
        except (ValueError, AttributeError) as e:
            raise ExternalServiceError(
                "Evidence pipeline returned an invalid payload",
                details=str(e),
                service="evidence",
            ) from e

    @staticmethod
    async def _read_stream(response: httpx.Response, on_progress: Optional[ProgressCallback]) -> EvidenceResult:
        async for line in response.aiter_lines():
            line = line.strip()
            if not line:
                continue
            message = json.loads(line)
            if "progress" in message:
                if on_progress is not None:
                    await on_progress(message["progress"])
            elif "result" in message:
                return parse_evidence_result(message["result"])
        raise ExternalServiceError(
            "Evidence pipeline stream ended without a result",
            service="evidence",
        )
