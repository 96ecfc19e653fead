import json
import logging
from typing import Any, Dict, Mapping, Optional, Sequence

from openai import OpenAI

from app.core.errors import ExternalServiceError, ValidationError
from app.core.retry import RetryPolicy, retry_with_backoff
from app.core.validate import sanitize_input
from app.models.schemas import DoseSpecification, PackageCandidate, QuantityRequirement

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"


class _ChatJsonClient:
    """Panggilan chat completion dengan output JSON (response_format json_object)."""

    def __init__(
        self,
        api_key: str = "",
        model: str = DEFAULT_MODEL,
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        client: Any = None,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy(max_retries=2)
        self._client = client

    @property
    def client(self) -> Any:
        # dibuat saat pertama dipakai supaya import tidak gagal tanpa OPENAI_API_KEY
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key or None, timeout=self.timeout)
        return self._client

    def _complete(self, prompt: str, temperature: float) -> Dict[str, Any]:
        completion = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            response_format={"type": "json_object"},
            temperature=temperature,
        )
        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise ValueError("No response from OpenAI")
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError("OpenAI response is not a JSON object")
        return data

    def complete_json(self, prompt: str, temperature: float, description: str) -> Dict[str, Any]:
        return retry_with_backoff(
            lambda: self._complete(prompt, temperature),
            policy=self.retry_policy,
            description=description,
        )


# =====================================================
#  DOSE PARSER
# =====================================================

SIG_PROMPT = """You are a pharmacy AI assistant. Parse the following prescription SIG into structured JSON.

SIG: "{sig}"

Return ONLY valid JSON matching this exact schema (no markdown, no explanations):
{{
  "dose": number,
  "unit": string,
  "frequency": number,
  "route": string,
  "duration": number or null,
  "specialInstructions": string
}}

"frequency" is the number of administrations per day."""


class OpenAIDoseParser(_ChatJsonClient):

    def __init__(self, *args: Any, max_sig_length: int = 500, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.max_sig_length = max_sig_length

    def parse(self, free_text: str) -> DoseSpecification:
        sanitized = sanitize_input(free_text)
        if not sanitized:
            raise ValidationError("SIG text cannot be empty")
        if len(sanitized) > self.max_sig_length:
            raise ValidationError(f"SIG text exceeds maximum length of {self.max_sig_length} characters")

        logger.info("Parsing SIG with OpenAI: %s", sanitized)
        try:
            raw = self.complete_json(SIG_PROMPT.format(sig=sanitized), 0.1, "SIG parsing")
            dose = DoseSpecification(
                dose_amount=float(raw["dose"]),
                dose_unit=str(raw.get("unit") or "unit").lower(),
                frequency_per_day=float(raw["frequency"]),
                route=str(raw.get("route") or ""),
                explicit_duration_days=int(raw["duration"]) if raw.get("duration") else None,
                free_text_note=raw.get("specialInstructions") or None,
            )
        except Exception as e:
            logger.error("Failed to parse SIG %r: %s", sanitized, e)
            raise ExternalServiceError("Failed to parse prescription directions") from e

        logger.info("SIG parsed: %s", dose.model_dump())
        return dose


# =====================================================
#  ADVISOR
# =====================================================

ADVISOR_PROMPT = """You are a pharmacy AI assistant selecting the optimal NDC package(s) for a prescription.

Required quantity: {quantity} {unit}
Available NDCs: {candidates}

Select the best option(s) considering:
- Minimize waste (prefer exact matches)
- Prefer single packages over multiple
- Never select inactive NDCs
- Warn about significant overfills

Return ONLY valid JSON matching this schema:
{{
  "lines": [
    {{"packageIdentifier": string, "packageCount": number, "suppliedQuantity": number}}
  ],
  "rationale": string,
  "warnings": [
    {{"category": "OVERFILL" | "MULTIPLE_PACKAGES" | "ADVISORY", "message": string, "severity": "INFO" | "WARNING" | "ERROR"}}
  ]
}}"""


class OpenAIAdvisor(_ChatJsonClient):
    """
    Advisor probabilistik. Output mentah dikembalikan apa adanya; validasi
    skema dilakukan oleh orchestrator sebelum dipakai.
    """

    def advise(
        self,
        requirement: QuantityRequirement,
        candidates: Sequence[PackageCandidate],
    ) -> Mapping[str, Any]:
        if requirement.total_quantity <= 0:
            raise ValidationError("Required quantity must be a positive number")
        if not candidates:
            raise ValidationError("At least one NDC must be available")

        listing = [
            {"ndc": c.identifier, "packageSize": c.size, "unit": c.unit, "status": c.lifecycle_status.value}
            for c in candidates
        ]
        prompt = ADVISOR_PROMPT.format(
            quantity=f"{requirement.total_quantity:g}",
            unit=requirement.unit,
            candidates=json.dumps(listing, indent=2),
        )

        logger.info("Requesting advisory package selection for %d candidate(s)", len(candidates))
        try:
            return self.complete_json(prompt, 0.3, "advisory selection")
        except Exception as e:
            logger.error("Advisory selection failed: %s", e)
            raise ExternalServiceError("Failed to select optimal NDC") from e
