from specflow.agents.base import (
    AgentExecutionError,
    AgentInvoker,
    AgentRequest,
    AgentResult,
    AgentTimeoutError,
    agent_environment,
)
from specflow.agents.claude import ClaudeAgentInvoker
from specflow.agents.phase_executor import (
    PhaseExecutionResult,
    PhaseExecutor,
    build_phase_prompt,
    build_task_prompt,
)

__all__ = [
    "AgentExecutionError",
    "AgentInvoker",
    "AgentRequest",
    "AgentResult",
    "AgentTimeoutError",
    "ClaudeAgentInvoker",
    "PhaseExecutionResult",
    "PhaseExecutor",
    "agent_environment",
    "build_phase_prompt",
    "build_task_prompt",
]
