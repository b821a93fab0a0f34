"""CLI demonstration of agents and a workflow run end to end."""
from __future__ import annotations

import asyncio

from fleet.agents.echo import EchoAgent
from fleet.agents.worker import Worker
from fleet.core.event_bus import EventBus
from fleet.core.log import configure_logging
from fleet.core.models import AgentConfig
from fleet.orchestration.registry import AgentRegistry
from fleet.workflow.engine import WorkflowEngine

DEMO_WORKFLOW = {
    "name": "greet-and-summarize",
    "variables": {"greeting": "hello"},
    "steps": [
        {
            "id": "greet",
            "type": "agent",
            "agent_id": "demo-echo",
            "config": {"task_type": "echo", "content": "${greeting} ${user}"},
            "on_success": ["pause"],
        },
        {"id": "pause", "type": "delay", "config": {"delay": 50}, "on_success": ["summarize"]},
        {
            "id": "summarize",
            "type": "agent",
            "agent_id": "demo-echo",
            "config": {"task_type": "execute", "summary": "${echo}"},
        },
    ],
}


async def main() -> None:
    configure_logging("WARNING")
    bus = EventBus()
    registry = AgentRegistry(bus=bus)
    engine = WorkflowEngine(registry)

    worker = Worker(AgentConfig(id="demo-echo", name="demo-echo"), EchoAgent(name="demo-echo"), bus=bus)
    await registry.register(worker)
    await registry.start_agent(worker.id)
    print(f"Started agent {worker.id} in state {worker.status.value}")

    task_id = await registry.submit_task(worker.id, "echo", {"content": "ping"})
    task = await registry.wait_for_task(task_id, timeout=2)
    print(f"Task {task.id} finished with {task.result}")

    workflow = await engine.create_workflow(DEMO_WORKFLOW)
    execution = await engine.execute_workflow(workflow.id, {"user": "demo"})
    await engine.wait_for_execution(execution.id, timeout=5)
    print(f"Execution {execution.id} {execution.status.value}: {execution.step_results}")

    await engine.stop()
    await registry.cleanup()
    print("Agents unregistered")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
