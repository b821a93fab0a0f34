"""Simple agent behavior used by the demo, the default runtime and tests."""
from __future__ import annotations

import asyncio
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict

from fleet.agents.base import AgentBehavior
from fleet.core.models import AgentTask, Capability


class EchoPayload(BaseModel):
    content: str = ""
    delay_ms: float = 0


class ExecutePayload(BaseModel):
    """Free-form payload; every field is echoed back."""

    model_config = ConfigDict(extra="allow")


class EchoAgent(AgentBehavior):
    """Echoes incoming payloads, optionally after a simulated delay."""

    payload_schemas = {"echo": EchoPayload, "execute": ExecutePayload}
    capabilities = (
        Capability(name="echo", description="Reply with the received content"),
        Capability(name="execute", description="Return the payload as the result"),
    )

    def __init__(self, name: str = "echo") -> None:
        self.name = name
        self.handled = 0

    async def execute(self, task: AgentTask) -> Any:
        payload = self.validate_payload(task)
        self.handled += 1
        if isinstance(payload, EchoPayload):
            if payload.delay_ms:
                await asyncio.sleep(payload.delay_ms / 1000)  # Simulate work
            return {"echo": f"{self.name} heard {payload.content}"}
        result: Dict[str, Any] = dict(task.payload)
        result["handled_by"] = self.name
        return result

    async def custom_metrics(self) -> Dict[str, float]:
        return {"echo.handled": float(self.handled)}
