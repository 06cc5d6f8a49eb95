"""
Conversational fallback through the OpenAI Assistants API.

Used only when no rule or NLU label applies. One run per inbound message,
polled until it reaches a terminal status or the wall-clock deadline passes.
The deadline covers the whole exchange, thread creation included, and every
backend call is capped at whatever budget is left. Tool calls are
acknowledged with a stub so the run can finish; the owner handles anything
real.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from openai import OpenAI

from leadsms.config import settings
from leadsms.errors import CollaboratorTimeout, ProviderError
from leadsms.runtime import get_logger

logger = get_logger(__name__)

PENDING_STATUSES = ("queued", "in_progress", "cancelling", "requires_action")
STUB_TOOL_OUTPUT = json.dumps({"ok": True, "note": "Tool not implemented on server. Human will follow up."})


class AssistantBackend(Protocol):
    """Each call must give up after `timeout` seconds."""

    def create_thread(self, *, timeout: float) -> str:
        ...

    def append_user_message(self, thread_id: str, text: str, *, timeout: float) -> None:
        ...

    def start_run(self, thread_id: str, metadata: Dict[str, str], *, timeout: float) -> str:
        ...

    def poll_run(self, thread_id: str, run_id: str, *, timeout: float) -> Tuple[str, List[str]]:
        """Return (status, pending tool call ids)."""
        ...

    def submit_tool_outputs(
        self, thread_id: str, run_id: str, outputs: List[Dict[str, str]], *, timeout: float
    ) -> None:
        ...

    def latest_reply(self, thread_id: str, *, timeout: float) -> Optional[str]:
        ...


class OpenAIAssistantBackend:
    def __init__(self, client: Optional[Any] = None, assistant_id: Optional[str] = None) -> None:
        s = settings()
        self.assistant_id = assistant_id or s.OPENAI_ASSISTANT_ID
        if client is None:
            if not s.OPENAI_API_KEY:
                raise ProviderError("OPENAI_API_KEY is missing", provider="openai")
            # retries would overrun the caller's deadline
            client = OpenAI(api_key=s.OPENAI_API_KEY, timeout=s.OPENAI_TIMEOUT, max_retries=0)
        self.client = client

    def create_thread(self, *, timeout: float) -> str:
        return self.client.beta.threads.create(timeout=timeout).id

    def append_user_message(self, thread_id: str, text: str, *, timeout: float) -> None:
        self.client.beta.threads.messages.create(thread_id=thread_id, role="user", content=text or "", timeout=timeout)

    def start_run(self, thread_id: str, metadata: Dict[str, str], *, timeout: float) -> str:
        run = self.client.beta.threads.runs.create(
            thread_id=thread_id,
            assistant_id=self.assistant_id,
            metadata=metadata,
            timeout=timeout,
        )
        return run.id

    def poll_run(self, thread_id: str, run_id: str, *, timeout: float) -> Tuple[str, List[str]]:
        run = self.client.beta.threads.runs.retrieve(thread_id=thread_id, run_id=run_id, timeout=timeout)
        call_ids: List[str] = []
        action = getattr(run, "required_action", None)
        if run.status == "requires_action" and action is not None and action.submit_tool_outputs:
            call_ids = [c.id for c in action.submit_tool_outputs.tool_calls or []]
        return run.status, call_ids

    def submit_tool_outputs(
        self, thread_id: str, run_id: str, outputs: List[Dict[str, str]], *, timeout: float
    ) -> None:
        self.client.beta.threads.runs.submit_tool_outputs(
            thread_id=thread_id, run_id=run_id, tool_outputs=outputs, timeout=timeout
        )

    def latest_reply(self, thread_id: str, *, timeout: float) -> Optional[str]:
        page = self.client.beta.threads.messages.list(thread_id=thread_id, order="desc", limit=1, timeout=timeout)
        data = list(getattr(page, "data", None) or [])
        if not data or getattr(data[0], "role", "assistant") != "assistant":
            return None
        for part in data[0].content or []:
            text = getattr(part, "text", None)
            if text is not None and getattr(text, "value", None):
                return text.value.strip()
        return None


@dataclass
class AssistantOutcome:
    reply: Optional[str]
    thread_id: Optional[str]
    status: str


class AssistantResponder:
    """Drive one bounded assistant run. reply() never raises."""

    def __init__(
        self,
        backend: AssistantBackend,
        *,
        deadline_seconds: Optional[float] = None,
        poll_interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        s = settings()
        self.backend = backend
        self.deadline_seconds = s.ASSISTANT_DEADLINE_SECONDS if deadline_seconds is None else deadline_seconds
        self.poll_interval = s.ASSISTANT_POLL_INTERVAL if poll_interval is None else poll_interval
        self._sleep = sleep
        self._clock = clock

    def _remaining(self, started: float) -> float:
        left = self.deadline_seconds - (self._clock() - started)
        if left <= 0:
            raise CollaboratorTimeout(f"Assistant exceeded its {self.deadline_seconds:.0f}s deadline")
        return left

    def _run(self, started: float, thread_id: str, text: str, phone: str) -> Tuple[str, Optional[str]]:
        self.backend.append_user_message(thread_id, text, timeout=self._remaining(started))
        run_id = self.backend.start_run(thread_id, {"phone": phone}, timeout=self._remaining(started))

        status, calls = self.backend.poll_run(thread_id, run_id, timeout=self._remaining(started))
        while status in PENDING_STATUSES:
            if status == "requires_action" and calls:
                outputs = [{"tool_call_id": cid, "output": STUB_TOOL_OUTPUT} for cid in calls]
                self.backend.submit_tool_outputs(thread_id, run_id, outputs, timeout=self._remaining(started))
            self._sleep(min(self.poll_interval, self._remaining(started)))
            status, calls = self.backend.poll_run(thread_id, run_id, timeout=self._remaining(started))

        if status != "completed":
            logger.warning("Assistant run %s ended with status %s", run_id, status)
            return "failed", None
        return "completed", self.backend.latest_reply(thread_id, timeout=self._remaining(started))

    def reply(self, text: str, phone: str, thread_id: Optional[str] = None) -> AssistantOutcome:
        started = self._clock()
        try:
            thread_id = thread_id or self.backend.create_thread(timeout=self._remaining(started))
        except CollaboratorTimeout as exc:
            logger.warning("%s", exc)
            return AssistantOutcome(None, None, "timeout")
        except Exception as exc:
            logger.warning("Assistant thread creation failed for %s: %s", phone, exc)
            return AssistantOutcome(None, None, "failed")

        try:
            status, reply = self._run(started, thread_id, text, phone)
        except CollaboratorTimeout as exc:
            logger.warning("%s (thread %s)", exc, thread_id)
            return AssistantOutcome(None, thread_id, "timeout")
        except Exception as exc:
            logger.warning("Assistant run failed for %s: %s", phone, exc)
            return AssistantOutcome(None, thread_id, "failed")

        if status == "completed" and not reply:
            status = "empty"
        return AssistantOutcome(reply or None, thread_id, status)


def build_assistant() -> Optional[AssistantResponder]:
    s = settings()
    if not s.OPENAI_API_KEY or not s.OPENAI_ASSISTANT_ID:
        logger.info("Assistant not configured; unknown intents get the canned fallback")
        return None
    return AssistantResponder(OpenAIAssistantBackend())
