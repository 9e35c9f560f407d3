from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from specflow.agents.base import (
    AgentExecutionError,
    AgentInvoker,
    AgentRequest,
    AgentResult,
    AgentTimeoutError,
    agent_environment,
)

logger = logging.getLogger(__name__)


class ClaudeAgentInvoker(AgentInvoker):
    """Runs ``claude -p`` and collects its streamed text output."""

    def __init__(self, binary: str = "claude", default_timeout_seconds: float = 900.0) -> None:
        self.binary = binary
        self.default_timeout_seconds = default_timeout_seconds
        self._process: asyncio.subprocess.Process | None = None

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [self.binary, "-p", request.prompt, "--output-format", "stream-json", "--verbose"]
        if request.skip_permissions:
            command.append("--dangerously-skip-permissions")
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        if event.get("type") == "result" and isinstance(event.get("result"), str):
            return ""
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def _collect(self, process: asyncio.subprocess.Process) -> list[str]:
        if process.stdout is None:
            raise AgentExecutionError(
                "Claude process did not expose stdout.", agent="claude", retriable=False
            )
        chunks: list[str] = []
        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                chunks.append(line)
                continue
            if isinstance(event, dict):
                content = self._extract_content(event)
                if content:
                    chunks.append(content)
        if parse_buffer:
            chunks.append(parse_buffer)
        return chunks

    @staticmethod
    async def _read_stderr(process: asyncio.subprocess.Process) -> bytes:
        if process.stderr is None:
            return b""
        return await process.stderr.read()

    async def _run(self, request: AgentRequest) -> AgentResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(request),
                cwd=str(request.working_dir),
                env=agent_environment(request.tier),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AgentExecutionError(
                f"Claude binary not found: {self.binary}", agent="claude", retriable=False
            ) from exc

        self._process = process
        try:
            chunks, stderr_bytes = await asyncio.gather(
                self._collect(process), self._read_stderr(process)
            )
            return_code = await process.wait()
        finally:
            if process.returncode is None:
                process.terminate()
                await process.wait()
            self._process = None

        stderr_output = stderr_bytes.decode("utf-8", errors="replace").strip()
        output = "\n".join(chunks).strip()
        if return_code != 0:
            return AgentResult(
                success=False,
                output=output,
                error=f"Claude exited with code {return_code}: {stderr_output}",
                exit_code=return_code,
            )
        return AgentResult(success=True, output=output, exit_code=0)

    async def invoke(self, request: AgentRequest) -> AgentResult:
        timeout = request.timeout_seconds or self.default_timeout_seconds
        logger.debug("Invoking %s in %s", self.binary, request.working_dir)
        try:
            return await asyncio.wait_for(self._run(request), timeout=timeout)
        except TimeoutError as exc:
            raise AgentTimeoutError(
                f"Claude invocation timed out after {timeout:.1f}s", agent="claude"
            ) from exc

    def abort(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            logger.info("Terminating in-flight agent process %s", process.pid)
            process.terminate()
