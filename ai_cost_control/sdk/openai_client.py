"""
Guarded OpenAI client wrapper.

Routes chat completions through the control plane: cached answers are
returned without calling OpenAI, paused firms are refused, and every real
call is priced and recorded.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..config.loader import ControlPlaneConfig
from ..core.control_plane import ControlPlane, InvocationUsage, Outcome
from ..core.errors import BudgetExceeded
from ..core.governor import Notifier
from ..core.pricing import PRICING_TABLE
from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import UsageRecord


@dataclass(frozen=True)
class ChatResult:
    """Answer returned by GuardedOpenAI.chat."""
    text: str
    cached: bool
    alert_threshold: Optional[str] = None
    usage_record: Optional[UsageRecord] = None
    match: Optional[str] = None


class GuardedOpenAI:
    """OpenAI client wrapper for one firm and operation type.

    All ledger failures are loud to ensure no silent data loss.
    """

    def __init__(
        self,
        model: str,
        operation_type: str,
        firm_id: str,
        db_path: Optional[str] = None,
        config: Optional[ControlPlaneConfig] = None,
        embedding_model: Optional[str] = None,
        notifier: Optional[Notifier] = None
    ):
        """Initialize guarded OpenAI client.

        Args:
            model: OpenAI model name (required)
            operation_type: Operation type for caching and attribution (required)
            firm_id: Tenant the calls are billed to (required)
            db_path: Database file path (defaults to the CLI's database)
            config: Control-plane configuration
            embedding_model: OpenAI embedding model; enables similarity matching
            notifier: Receiver for budget alerts

        Raises:
            ValueError: If model, operation_type or firm_id is missing/empty,
                or the model has no price
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not operation_type or not operation_type.strip():
            raise ValueError("operation_type is required and cannot be empty")
        if not firm_id or not firm_id.strip():
            raise ValueError("firm_id is required and cannot be empty")
        if not PRICING_TABLE.supports(model):
            raise ValueError(f"Unsupported model: {model}")

        self.model = model
        self.operation_type = operation_type
        self.firm_id = firm_id
        self.db_path = db_path or DEFAULT_DB_PATH
        self.embedding_model = embedding_model
        self.control_plane = ControlPlane(self.db_path, config=config, notifier=notifier)
        self.client = OpenAI()

    def chat(
        self,
        messages: List[Dict[str, str]],
        user_id: Optional[str] = None,
        case_id: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> ChatResult:
        """Answer a chat prompt from cache or from OpenAI.

        Args:
            messages: List of message dictionaries (required)
            user_id: User the call is attributed to
            case_id: Case the call is attributed to
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            ChatResult with the answer text and how it was obtained

        Raises:
            ValueError: If messages is empty
            BudgetExceeded: If the firm is paused and nothing is cached
            OpenAI API errors: Propagated without modification
            LedgerWriteFailed: If the call could not be recorded
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        prompt = _render_prompt(messages)
        embedding = self._embed(prompt)

        resolved = self.control_plane.resolve(
            prompt, embedding, self.firm_id, self.operation_type, user_id=user_id, case_id=case_id
        )
        if resolved.outcome == Outcome.CACHE_HIT:
            return ChatResult(
                text=resolved.response,
                cached=True,
                alert_threshold=resolved.alert_threshold,
                usage_record=resolved.usage_record,
                match=resolved.match
            )
        if resolved.outcome == Outcome.BLOCKED:
            raise BudgetExceeded(self.firm_id, resolved.decision.spend_cents, resolved.decision.budget_cents)

        started = time.monotonic()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )
        except Exception:
            self.control_plane.release(self.firm_id, self.operation_type, prompt)
            raise
        latency_ms = int((time.monotonic() - started) * 1000)

        usage = response.usage
        if not usage:
            self.control_plane.release(self.firm_id, self.operation_type, prompt)
            raise ValueError("OpenAI response missing usage information")

        answer = response.choices[0].message.content or ""
        recorded = self.control_plane.record(
            self.firm_id,
            self.operation_type,
            prompt,
            embedding,
            answer,
            InvocationUsage(
                model=self.model,
                input_tokens=usage.prompt_tokens,
                output_tokens=usage.completion_tokens,
                latency_ms=latency_ms
            ),
            user_id=user_id,
            case_id=case_id
        )
        return ChatResult(
            text=answer,
            cached=False,
            alert_threshold=recorded.alert_threshold or resolved.alert_threshold,
            usage_record=recorded.usage_record
        )

    def _embed(self, prompt: str) -> Optional[List[float]]:
        if not self.embedding_model:
            return None
        result = self.client.embeddings.create(model=self.embedding_model, input=prompt)
        return list(result.data[0].embedding)


def _render_prompt(messages: List[Dict[str, str]]) -> str:
    return "\n".join(f"{message.get('role', '')}: {message.get('content', '')}" for message in messages)
