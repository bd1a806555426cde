from __future__ import annotations
import os
import re
import shlex
import subprocess
from pathlib import Path
from typing import IO, Iterator, Protocol

from ralphloop.models import AgentConfig, SetupError
from ralphloop.utils import _redact_sensitive_text

_SHELL_META_PATTERN = re.compile(r"[|&;<>()$`]")
_PROMPT_TOKENS = ("{prompt}", "{prompt_path}")


class AgentProcess(Protocol):
    """One running agent invocation as seen by the controller."""

    def lines(self) -> Iterator[str]: ...

    def send(self, text: str) -> bool: ...

    def terminate(self) -> None: ...

    def wait(self, timeout: float | None = None) -> int | None: ...


class AgentLauncher(Protocol):
    def launch(self, prompt: str, *, iteration: int) -> AgentProcess: ...


def _command_uses_shell_syntax(command: str) -> bool:
    return bool(_SHELL_META_PATTERN.search(command))


def build_agent_argv(
    template: str,
    *,
    model: str,
    prompt: str,
    prompt_path: Path,
    workspace_dir: Path,
    iteration: int,
) -> list[str]:
    """Split the command template first, then substitute tokens per argument.

    Substituted values (the prompt in particular) never pass through a shell,
    so they need no quoting.
    """
    if _command_uses_shell_syntax(template.replace("{", "").replace("}", "")):
        raise SetupError(
            "agent.command contains shell metacharacters; "
            "configure an argv-safe command without pipes/subshell syntax"
        )
    try:
        tokens = shlex.split(template)
    except ValueError as exc:
        raise SetupError(f"agent command could not be parsed: {exc}") from exc
    if not tokens:
        raise SetupError("agent command resolved to empty arguments")
    replacements = {
        "{model}": model,
        "{prompt}": prompt,
        "{prompt_path}": str(prompt_path),
        "{workspace_dir}": str(workspace_dir),
        "{iteration}": str(iteration),
    }
    argv: list[str] = []
    for token in tokens:
        if token in replacements:
            argv.append(replacements[token])
            continue
        for name, value in replacements.items():
            if name != "{prompt}":
                token = token.replace(name, value)
        argv.append(token)
    return argv


class SubprocessAgent:
    def __init__(self, process: subprocess.Popen[str], *, stderr_handle: IO[str] | None, stdin_open: bool) -> None:
        self.process = process
        self._stderr_handle = stderr_handle
        self._stdin_open = stdin_open and process.stdin is not None

    def lines(self) -> Iterator[str]:
        stream = self.process.stdout
        if stream is None:
            return
        for line in iter(stream.readline, ""):
            yield line

    def send(self, text: str) -> bool:
        if not self._stdin_open or self.process.stdin is None:
            return False
        try:
            self.process.stdin.write(text)
            self.process.stdin.flush()
        except (BrokenPipeError, ValueError, OSError):
            self._stdin_open = False
            return False
        return True

    def terminate(self) -> None:
        if self.process.poll() is not None:
            return
        self.process.terminate()
        try:
            self.process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self.process.kill()
            self.process.wait()

    def wait(self, timeout: float | None = None) -> int | None:
        try:
            returncode = self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        finally:
            if self.process.poll() is not None:
                self._close_streams()
        return returncode

    def _close_streams(self) -> None:
        for stream in (self.process.stdin, self.process.stdout):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError:
                pass
        if self._stderr_handle is not None:
            self._stderr_handle.close()
            self._stderr_handle = None


class SubprocessAgentLauncher:
    """Launch the agent CLI as a child process streaming JSON lines on stdout.

    stderr goes to a per-invocation log file so that stdout can be read on
    the calling thread without a second reader.  When the command template
    carries the prompt (``{prompt}`` or ``{prompt_path}``) stdin stays open for
    wrap-up instructions; otherwise the prompt is written to stdin and closed.
    """

    def __init__(self, config: AgentConfig, *, workspace: Path, log_dir: Path) -> None:
        self.config = config
        self.workspace = workspace
        self.log_dir = log_dir

    def launch(self, prompt: str, *, iteration: int) -> SubprocessAgent:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        prompt_path = self.log_dir / f"prompt-{iteration}.md"
        prompt_path.write_text(prompt, encoding="utf-8")
        argv = build_agent_argv(
            self.config.command,
            model=self.config.model,
            prompt=prompt,
            prompt_path=prompt_path,
            workspace_dir=self.workspace,
            iteration=iteration,
        )
        prompt_in_argv = any(token in self.config.command for token in _PROMPT_TOKENS)

        env = os.environ.copy()
        env["RALPH_ITERATION"] = str(iteration)
        env["RALPH_PROMPT_PATH"] = str(prompt_path)
        env["RALPH_WORKSPACE"] = str(self.workspace)

        stderr_handle = (self.log_dir / f"agent-{iteration}.stderr.log").open("a", encoding="utf-8")
        try:
            process = subprocess.Popen(
                argv,
                cwd=self.workspace,
                shell=False,
                text=True,
                encoding="utf-8",
                errors="replace",
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=stderr_handle,
                bufsize=1,
                env=env,
            )
        except OSError as exc:
            stderr_handle.close()
            command_text = _redact_sensitive_text(" ".join(argv[:1]))
            raise SetupError(f"agent command failed to start ({command_text}): {exc}") from exc

        agent = SubprocessAgent(process, stderr_handle=stderr_handle, stdin_open=prompt_in_argv)
        if not prompt_in_argv and process.stdin is not None:
            try:
                process.stdin.write(prompt)
                process.stdin.flush()
            except BrokenPipeError:
                pass
            finally:
                process.stdin.close()
        return agent
