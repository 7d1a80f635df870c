from __future__ import annotations

import base64
import json
import mimetypes
import re
from pathlib import Path
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, field_validator

logger = structlog.get_logger(__name__)

INVOICE_CATEGORIES = ("Food", "Transport", "Housing", "Utilities", "Entertainment", "Health", "Other")
# Largest value a BIGINT amount column holds.
MAX_AMOUNT = 2**63 - 1
EXTRACTION_PROMPT = (
    "Extract invoice details: amount (in cents), date (ISO), description, category "
    f"({', '.join(INVOICE_CATEGORIES)}), and type (income or expense). Return ONLY JSON."
)


class InvoiceExtractionError(RuntimeError):
    """Raised when the vision model cannot be reached or returns unusable output."""


class ExtractedInvoice(BaseModel):
    amount: int | None = None
    date: str | None = None
    description: str | None = None
    category: str = "Other"
    type: str = "expense"

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, value: Any) -> int | None:
        if value in (None, ""):
            return None
        try:
            amount = int(round(float(value)))
        except (TypeError, ValueError, OverflowError):
            return None
        return amount if abs(amount) <= MAX_AMOUNT else None

    @field_validator("category", mode="before")
    @classmethod
    def coerce_category(cls, value: Any) -> str:
        if isinstance(value, str):
            for category in INVOICE_CATEGORIES:
                if category.lower() == value.strip().lower():
                    return category
        return "Other"

    @field_validator("type", mode="before")
    @classmethod
    def coerce_type(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip().lower() == "income":
            return "income"
        return "expense"

    @property
    def is_complete(self) -> bool:
        return bool(self.amount) and bool(self.description)


class InvoiceExtractor:
    """Sends an invoice image to an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        model: str = "openai/gpt-4o",
        timeout: float = 60.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._api_key = api_key
        self._endpoint = base_url.rstrip("/") + "/chat/completions"
        self._model = model
        self._timeout = timeout
        self._http_client = http_client

    def extract_file(self, path: str | Path) -> dict[str, Any]:
        file_path = Path(path)
        try:
            raw_bytes = file_path.read_bytes()
        except OSError as exc:
            raise InvoiceExtractionError(f"Cannot read invoice file: {file_path}") from exc
        mime, _ = mimetypes.guess_type(file_path.name)
        return self.extract(raw_bytes, mime or "image/jpeg")

    def extract(self, image: bytes, mime_type: str = "image/jpeg") -> dict[str, Any]:
        encoded = base64.b64encode(image).decode("ascii")
        body = {
            "model": self._model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": EXTRACTION_PROMPT},
                        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
                    ],
                }
            ],
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}

        try:
            if self._http_client is not None:
                response = self._http_client.post(self._endpoint, json=body, headers=headers, timeout=self._timeout)
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.post(self._endpoint, json=body, headers=headers)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise InvoiceExtractionError("Failed to contact vision model") from exc

        message_text = ""
        choices = payload.get("choices") if isinstance(payload, dict) else None
        if choices:
            message_text = (choices[0].get("message") or {}).get("content") or ""
        if not message_text:
            raise InvoiceExtractionError("Vision model returned no content")

        try:
            extracted = extract_json_object(message_text)
        except ValueError as exc:
            raise InvoiceExtractionError(str(exc)) from exc
        logger.info("invoice_extracted", model=self._model, fields=sorted(extracted))
        return extracted


def extract_json_object(text: str) -> dict[str, Any]:
    if not text:
        return {}
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned, flags=re.IGNORECASE)
        cleaned = re.sub(r"\s*```$", "", cleaned, flags=re.IGNORECASE)
    cleaned = cleaned.strip()
    try:
        data = json.loads(cleaned)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass
    match = re.search(r"\{.*\}", cleaned, re.DOTALL)
    if match:
        try:
            data = json.loads(match.group(0))
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass
    raise ValueError("Model response was not valid JSON")
