from __future__ import annotations

"""
Optional LLM re-ranking of the top candidates.

After the hybrid ranker has produced a deterministic list, the engine
may hand the top-N candidates and the original query to an external
reasoning capability that reorders them and attaches a short
rationale.  The stage is best-effort: a timeout, a transport error or
an unusable answer leaves the ranked list exactly as it was and the
response is tagged as not augmented.  Augmented output is never
written to the query cache.
"""

import json
import os
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import httpx
from loguru import logger

from .config import (
    ANTHROPIC_API_URL,
    ANTHROPIC_MODEL,
    ANTHROPIC_VERSION,
    AUGMENT_SYSTEM_PROMPT,
    AUGMENT_TIMEOUT,
    AUGMENT_TOP_N,
    CandidateResult,
)
from .errors import AugmentationError


@runtime_checkable
class Augmenter(Protocol):
    """Reasoning capability: reorder/annotate candidates for a query."""

    def augment(self, query: str, candidates: List[CandidateResult]) -> List[CandidateResult]: ...


def merge_augmented(
    original: Sequence[CandidateResult],
    answer: Sequence[CandidateResult],
) -> List[CandidateResult]:
    """
    Apply the capability's order to ``original``.

    Returned candidates come first in the returned order, carrying their
    rationale; candidates the capability left out follow in their
    original order.  Ranks are renumbered from 1.  Unknown or duplicate
    codes make the whole answer unusable.
    """
    by_code = {c.code: c for c in original}
    seen: set[str] = set()
    ordered: List[CandidateResult] = []
    for item in answer:
        code = getattr(item, "code", None)
        if code not in by_code:
            raise AugmentationError(f"augmenter returned unknown code {code!r}")
        if code in seen:
            raise AugmentationError(f"augmenter returned duplicate code {code!r}")
        seen.add(code)
        ordered.append(by_code[code].model_copy(update={"rationale": getattr(item, "rationale", None)}))
    ordered.extend(c.model_copy() for c in original if c.code not in seen)
    return [c.model_copy(update={"rank": i}) for i, c in enumerate(ordered, 1)]


class AugmentationStage:
    """
    Timeout-bounded wrapper around an :class:`Augmenter`.

    The capability runs on a worker thread; the caller waits at most
    ``timeout`` seconds and no lock is held meanwhile.
    """

    def __init__(
        self,
        augmenter: Optional[Augmenter],
        timeout: float = AUGMENT_TIMEOUT,
        top_n: int = AUGMENT_TOP_N,
        max_workers: int = 4,
    ) -> None:
        self.augmenter = augmenter
        self.timeout = timeout
        self.top_n = top_n
        self._pool = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="augment")
            if augmenter is not None
            else None
        )

    @property
    def available(self) -> bool:
        return self.augmenter is not None and self._pool is not None

    def run(
        self, query: str, candidates: Sequence[CandidateResult]
    ) -> Tuple[List[CandidateResult], bool]:
        """
        Returns ``(candidates, augmented)``.  On any failure the input
        list is returned unchanged with ``augmented=False``.
        """
        unchanged = list(candidates)
        if not self.available or not unchanged:
            return unchanged, False

        head = unchanged[: self.top_n]
        tail = unchanged[self.top_n :]
        # the capability only ever sees copies
        copies = [c.model_copy(deep=True) for c in head]
        future = self._pool.submit(self.augmenter.augment, query, copies)
        try:
            answer = future.result(timeout=self.timeout)
            if not isinstance(answer, (list, tuple)):
                raise AugmentationError(f"augmenter returned {type(answer).__name__}")
            merged = merge_augmented(head, answer)
        except FuturesTimeout:
            future.cancel()
            logger.warning("Augmentation timed out after {}s; returning unaugmented ranking", self.timeout)
            return unchanged, False
        except Exception as e:
            logger.warning("Augmentation failed; returning unaugmented ranking: {}", e)
            return unchanged, False

        offset = len(merged)
        merged.extend(c.model_copy(update={"rank": offset + i}) for i, c in enumerate(tail, 1))
        logger.info("Augmented top {} candidates", len(head))
        return merged, True

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=False, cancel_futures=True)
            self._pool = None


# -----------------------------------------------------------------------------
# Hosted LLM capability
# -----------------------------------------------------------------------------

def _user_prompt(query: str, candidates: Sequence[CandidateResult]) -> str:
    lines = [f"- {c.code}: {c.description}" for c in candidates]
    joined = "\n".join(lines) if lines else "(no candidates)"
    return f"PRODUCT:\n{query}\n\nCANDIDATE CODES:\n{joined}\n\nReturn JSON only."


def _extract_text(data: dict) -> str:
    content = data.get("content") or []
    if content and isinstance(content, list):
        node = content[0]
        if isinstance(node, dict) and node.get("type") == "text":
            return node.get("text") or ""
    return ""


def _strip_fences(raw: str) -> str:
    raw = raw.strip()
    if raw.startswith("```"):
        raw = raw.strip("`")
        if raw.startswith("json"):
            raw = raw[4:]
    return raw.strip()


class AnthropicAugmenter:
    """
    Re-ranks candidates with the Anthropic Messages API over ``httpx``.
    """

    def __init__(
        self,
        api_key: str,
        model: str = ANTHROPIC_MODEL,
        api_url: str = ANTHROPIC_API_URL,
        http_timeout: float = AUGMENT_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self.http_timeout = http_timeout
        self.client = client

    @classmethod
    def from_env(cls, http_timeout: float = AUGMENT_TIMEOUT) -> Optional["AnthropicAugmenter"]:
        api_key = os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            logger.info("ANTHROPIC_API_KEY not set; augmentation disabled")
            return None
        return cls(api_key=api_key, http_timeout=http_timeout)

    def _post(self, payload: dict) -> dict:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        if self.client is not None:
            resp = self.client.post(self.api_url, headers=headers, json=payload, timeout=self.http_timeout)
        else:
            with httpx.Client(timeout=self.http_timeout) as client:
                resp = client.post(self.api_url, headers=headers, json=payload)
        resp.raise_for_status()
        return resp.json()

    def augment(self, query: str, candidates: List[CandidateResult]) -> List[CandidateResult]:
        payload = {
            "model": self.model,
            "max_tokens": 800,
            "system": AUGMENT_SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": _user_prompt(query, candidates)}],
            "temperature": 0.0,
        }
        data = self._post(payload)
        raw = _strip_fences(_extract_text(data))
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise AugmentationError(f"unparseable augmenter output: {raw[:80]!r}") from e

        ranking = parsed.get("ranking") if isinstance(parsed, dict) else None
        if not isinstance(ranking, list):
            raise AugmentationError("augmenter output has no 'ranking' list")

        by_code = {c.code: c for c in candidates}
        out: List[CandidateResult] = []
        for item in ranking:
            if not isinstance(item, dict):
                continue
            code = str(item.get("code", "")).strip()
            if code not in by_code:
                raise AugmentationError(f"augmenter suggested unknown code {code!r}")
            rationale = item.get("rationale")
            out.append(
                by_code[code].model_copy(
                    update={"rationale": str(rationale).strip() if rationale else None}
                )
            )
        return out
