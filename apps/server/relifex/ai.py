from __future__ import annotations

import base64
import json
import logging
import random
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .config import Settings
from .errors import UpstreamError

log = logging.getLogger(__name__)


@dataclass
class AIConfig:
    base_url: str
    api_key: Optional[str]
    model: str
    timeout_ms: int = 60000
    temperature: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> "AIConfig":
        return cls(
            base_url=settings.ai_gateway_url,
            api_key=settings.ai_api_key,
            model=settings.ai_model,
            timeout_ms=settings.ai_timeout_ms,
        )


def _now_ms() -> int:
    return int(time.monotonic() * 1000)


def _sleep_backoff(attempt: int) -> None:
    # simple exponential backoff with jitter: 100ms, 300ms, 900ms ...
    base = 0.1 * (3 ** attempt)
    jitter = random.uniform(0, 0.1)
    time.sleep(base + jitter)


def chat_completion(
    messages: List[Dict[str, Any]],
    cfg: AIConfig,
    tools: Optional[List[Dict[str, Any]]] = None,
    tool_choice: Optional[Dict[str, Any]] = None,
    retries: int = 2,
    client: Optional[httpx.Client] = None,
) -> Dict[str, Any]:
    """POST to ``{base_url}/chat/completions`` and return the decoded body.

    Transport errors are retried with backoff. HTTP 429 and 402 are surfaced
    unchanged so the API can tell the caller to slow down or top up credits.
    """
    if not cfg.api_key:
        raise UpstreamError("AI gateway is not configured", service="ai_gateway", status=503)

    url = cfg.base_url.rstrip("/") + "/chat/completions"
    payload: Dict[str, Any] = {
        "model": cfg.model,
        "messages": messages,
        "temperature": cfg.temperature,
    }
    if tools:
        payload["tools"] = tools
    if tool_choice:
        payload["tool_choice"] = tool_choice
    headers = {"Authorization": f"Bearer {cfg.api_key}"}

    start = _now_ms()
    own_client = client is None
    http = client or httpx.Client(timeout=cfg.timeout_ms / 1000.0)
    try:
        for attempt in range(retries + 1):
            try:
                resp = http.post(url, json=payload, headers=headers)
            except httpx.TransportError as e:
                if attempt < retries:
                    _sleep_backoff(attempt)
                    continue
                raise UpstreamError(f"AI gateway unreachable: {e}", service="ai_gateway") from e

            if resp.status_code == 429:
                raise UpstreamError("Rate limited. Please try again later.", service="ai_gateway", status=429)
            if resp.status_code == 402:
                raise UpstreamError("AI credits exhausted. Please add funds.", service="ai_gateway", status=402)
            if resp.status_code >= 400:
                log.error("ai.http_error status=%s body=%s", resp.status_code, resp.text[:300])
                raise UpstreamError(f"AI gateway error: {resp.status_code}", service="ai_gateway")

            try:
                data = resp.json()
            except ValueError as e:
                log.error("ai.invalid_json status=%s body=%s", resp.status_code, resp.text[:300])
                raise UpstreamError("AI gateway returned invalid JSON", service="ai_gateway") from e
            if not isinstance(data, dict):
                raise UpstreamError("AI gateway returned invalid JSON", service="ai_gateway")
            log.info("ai.chat model=%s ms=%s", cfg.model, _now_ms() - start)
            return data
    finally:
        if own_client:
            http.close()
    # unreachable: the loop either returns or raises
    raise UpstreamError("AI gateway unreachable", service="ai_gateway")


_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def extract_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return the outermost ``{...}`` in text as a dict (fenced or not)."""
    m = _JSON_OBJECT.search(text or "")
    if not m:
        return None
    try:
        obj = json.loads(m.group(0))
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


# --------- Bill validation ---------

BILL_SYSTEM_PROMPT = """You are a bill/invoice validation AI for a disaster relief fund management system.
Your job is to analyze bills and determine their validity for NGO expense claims.

Return a JSON object with:
{
  "isValid": boolean,
  "status": "valid" | "invalid" | "requires_review",
  "confidenceScore": number (0.0 to 1.0),
  "extractedAmount": number or null,
  "extractedVendor": string or null,
  "extractedDate": string (YYYY-MM-DD) or null,
  "discrepancies": string[],
  "notes": string
}

Validation rules:
1. The claimed amount must match the bill amount within 5% tolerance
2. The vendor name must match if provided
3. Look for signs of tampering or irregularities
4. The bill must have proper details (date, items, totals)
5. Flag bills that seem suspicious or need manual review

For amounts above 50,000 INR be extra vigilant for missing GST numbers,
inconsistent formatting, unusually round numbers and missing itemization."""

_UNPARSEABLE_BILL = {
    "isValid": False,
    "status": "requires_review",
    "confidenceScore": 0.5,
    "notes": "AI response could not be parsed. Manual review required.",
    "discrepancies": ["Unable to parse AI validation response"],
}


def _data_url(content: bytes, mime: str) -> str:
    return f"data:{mime};base64," + base64.b64encode(content).decode("ascii")


def normalize_bill_result(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map the model's camelCase reply onto our field names, with defaults."""
    status = raw.get("status")
    if status not in ("valid", "invalid", "requires_review"):
        status = "requires_review"
    try:
        confidence = float(raw.get("confidenceScore"))
    except (TypeError, ValueError):
        confidence = 0.5
    discrepancies = raw.get("discrepancies") or []
    if not isinstance(discrepancies, list):
        discrepancies = [str(discrepancies)]
    return {
        "is_valid": bool(raw.get("isValid")) and status == "valid",
        "status": status,
        "confidence_score": max(0.0, min(confidence, 1.0)),
        "extracted_amount": raw.get("extractedAmount"),
        "extracted_vendor": raw.get("extractedVendor"),
        "extracted_date": raw.get("extractedDate"),
        "discrepancies": [str(d) for d in discrepancies],
        "notes": str(raw.get("notes") or ""),
    }


def compose_validation_notes(result: Dict[str, Any]) -> str:
    notes = result.get("notes") or ""
    if result.get("discrepancies"):
        notes += "\n\nDiscrepancies:\n- " + "\n- ".join(result["discrepancies"])
    return notes


def validate_bill(
    cfg: AIConfig,
    content: bytes,
    mime: str,
    claimed_amount: float,
    vendor_name: Optional[str] = None,
    client: Optional[httpx.Client] = None,
) -> Dict[str, Any]:
    """Ask the model to check a bill image against the claimed amount."""
    user_text = (
        "Please validate this bill/invoice.\n"
        f"Claimed amount: ₹{claimed_amount}\n"
        f"Vendor name provided: {vendor_name or 'Not specified'}\n\n"
        "Analyze the bill image and verify the details."
    )
    messages = [
        {"role": "system", "content": BILL_SYSTEM_PROMPT},
        {"role": "user", "content": [
            {"type": "text", "text": user_text},
            {"type": "image_url", "image_url": {"url": _data_url(content, mime)}},
        ]},
    ]
    data = chat_completion(messages, cfg, client=client)
    content_text = ((data.get("choices") or [{}])[0].get("message") or {}).get("content")
    raw = extract_json_object(content_text)
    if raw is None:
        log.warning("ai.bill unparseable reply chars=%s", len(content_text or ""))
        raw = dict(_UNPARSEABLE_BILL)
    return normalize_bill_result(raw)


# --------- Fraud analysis ---------

FRAUD_SYSTEM_PROMPT = """You are a fraud detection AI for a government disaster relief system called RELIFEX.
Your task is to analyze entity data and provide a risk assessment.

Consider these factors:
- Transaction patterns (high volume with low count = suspicious)
- Fraud flags history
- Time in system (newer entities are riskier)
- Compliance rate
- Recent activity patterns

Provide a risk score from 0-100 (higher = more risky) and specific red flags if any."""

FRAUD_TOOL = {
    "type": "function",
    "function": {
        "name": "provide_fraud_analysis",
        "description": "Provide structured fraud risk analysis",
        "parameters": {
            "type": "object",
            "properties": {
                "risk_score": {"type": "number", "minimum": 0, "maximum": 100},
                "risk_level": {"type": "string", "enum": ["low", "medium", "high", "critical"]},
                "red_flags": {"type": "array", "items": {"type": "string"}},
                "recommendations": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["risk_score", "risk_level", "red_flags", "recommendations"],
        },
    },
}

DEFAULT_ASSESSMENT = {
    "risk_score": 50,
    "risk_level": "medium",
    "red_flags": ["Unable to fully analyze - using default assessment"],
    "recommendations": ["Manual review recommended"],
}


def analyze_fraud(cfg: AIConfig, metrics: Dict[str, Any], client: Optional[httpx.Client] = None) -> Dict[str, Any]:
    """Return a structured fraud-risk assessment for an NGO or merchant."""
    user_prompt = (
        f"Analyze this {metrics['entity_type']} for fraud risk:\n\n"
        f"Entity ID: {metrics['entity_id']}\n"
        f"Transaction Count: {metrics.get('transaction_count', 0)}\n"
        f"Transaction Volume: ₹{float(metrics.get('transaction_volume', 0)):,.0f}\n"
        f"Previous Fraud Flags: {metrics.get('fraud_flags', 0)}\n"
        f"Time in System: {metrics.get('time_in_system_months', 0)} months\n"
        f"Compliance Rate: {metrics.get('compliance_rate', 100)}%\n"
        f"Recent Activity: {metrics.get('recent_activity') or 'n/a'}\n\n"
        "Provide risk_score (0-100), risk_level (low/medium/high/critical), "
        "red_flags and recommendations."
    )
    messages = [
        {"role": "system", "content": FRAUD_SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]
    data = chat_completion(
        messages,
        cfg,
        tools=[FRAUD_TOOL],
        tool_choice={"type": "function", "function": {"name": "provide_fraud_analysis"}},
        client=client,
    )
    message = (data.get("choices") or [{}])[0].get("message") or {}
    tool_calls = message.get("tool_calls") or []
    if tool_calls:
        args = (tool_calls[0].get("function") or {}).get("arguments")
        try:
            return json.loads(args) if isinstance(args, str) else dict(args)
        except (TypeError, ValueError):
            log.warning("ai.fraud bad tool arguments entity=%s", metrics.get("entity_id"))
    return dict(DEFAULT_ASSESSMENT)
