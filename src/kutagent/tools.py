"""
Sandboxed Tool Executor - the only way the agent touches the world.

Every side effect the provider can ask for goes through this module:
file reads and writes, directory listings, shell commands, HTTP fetches
and the clock. Each handler enforces its own bounds:

- Filesystem paths must resolve inside an explicitly injected root
- File contents and tool output are capped at 1 MiB
- Directory listings stop after a fixed number of entries
- Shell commands and fetches run under a timeout bounded by the run deadline

A handler failure never escapes as an exception. It becomes a
"tool error: ..." result the provider can read and react to.
Side effects are not rolled back if a later step fails.
"""

import io
import logging
import os
import signal
import stat
import subprocess
import threading
import time
import urllib.parse
from collections.abc import Callable, Iterator
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx
from bs4 import BeautifulSoup

from kutagent.config import ToolConfig
from kutagent.deadline import Deadline
from kutagent.types import JSONValue, ToolCall, ToolResult

logger = logging.getLogger(__name__)

TRUNCATION_NOTICE = "... truncated due to output size limit ..."

# How often a running subprocess is polled for cancellation.
_POLL_INTERVAL = 0.1

# How long to wait for the output pipe to close after a kill.
_KILL_GRACE = 1.0

_READ_CHUNK = 65536

_SKIPPED_HTML_TAGS = ["script", "style", "noscript"]

ToolHandler = Callable[[dict[str, JSONValue], Deadline | None], str]


class ToolError(Exception):
    """A recoverable tool failure, reported back to the provider as text."""
    pass


def html_to_text(data: bytes | str) -> str:
    """
    Render an HTML document as its visible text.

    script, style and noscript subtrees are dropped, entities are
    unescaped and whitespace runs collapse to single spaces.
    """
    soup = BeautifulSoup(data, "html.parser")
    for tag in soup(_SKIPPED_HTML_TAGS):
        tag.decompose()
    return " ".join(soup.get_text(" ").split())


def is_html_content_type(content_type: str) -> bool:
    return "html" in content_type.lower()


def _require_str(
    args: dict[str, JSONValue],
    key: str,
    allow_empty: bool = False,
) -> str:
    value = args.get(key)
    if value is None or (value == "" and not allow_empty):
        raise ToolError(f"missing required argument: {key}")
    if not isinstance(value, str):
        raise ToolError(
            f"argument {key} must be a string, got {type(value).__name__}"
        )
    return value


def _timeout_arg(args: dict[str, JSONValue], default: float) -> float:
    """Optional positive timeout_sec; anything else means the default."""
    value = args.get("timeout_sec")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if value <= 0:
        return default
    return float(value)


class OutputCollector:
    """
    Drains a subprocess pipe on a background thread.

    Only the first `limit` bytes are kept; anything after that is read
    and dropped so the child never blocks on a full pipe.
    """

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.data = bytearray()
        self.overflowed = False
        self._thread: threading.Thread | None = None

    def start(self, stream: io.BufferedIOBase) -> None:
        self._thread = threading.Thread(target=self.collect, args=(stream,), daemon=True)
        self._thread.start()

    def collect(self, stream: io.BufferedIOBase) -> None:
        """Read stream to EOF. Runs on the collector thread."""
        try:
            while True:
                chunk = stream.read1(_READ_CHUNK)
                if not chunk:
                    break
                room = self.limit - len(self.data)
                if len(chunk) > room:
                    self.overflowed = True
                if room > 0:
                    self.data.extend(chunk[:room])
        except (OSError, ValueError) as e:
            logger.debug(f"Output pipe closed while reading: {e}")
        finally:
            stream.close()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


class SandboxedExecutor:
    """
    Executes tool calls against a fixed root directory.

    The root is injected at construction so confinement does not depend
    on the process working directory. An httpx client may be injected
    for fetch_url; otherwise one is created per fetch.
    """

    def __init__(
        self,
        root: str | Path,
        config: ToolConfig | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.root = Path(os.path.realpath(root))
        self.config = config or ToolConfig()
        self._http_client = http_client
        root_str = str(self.root)
        self._root_prefix = root_str if root_str.endswith(os.sep) else root_str + os.sep
        self._handlers: dict[str, ToolHandler] = {
            "time_now": self._time_now,
            "read_file": self._read_file,
            "list_files": self._list_files,
            "edit_file": self._edit_file,
            "run_shell": self._run_shell,
            "fetch_url": self._fetch_url,
        }

    @property
    def tool_names(self) -> list[str]:
        return list(self._handlers)

    def execute(self, tool_call: ToolCall, deadline: Deadline | None = None) -> ToolResult:
        """
        Execute a single tool call.

        Always returns a ToolResult tagged with the call's id and tool
        name; failures are reported in its content.
        """
        handler = self._handlers.get(tool_call.name)
        if handler is None:
            return self._failure(tool_call, f"unknown tool: {tool_call.name}")

        logger.info(f"Tool: {tool_call.name} with args {tool_call.arguments}")
        try:
            content = handler(tool_call.arguments, deadline)
        except ToolError as e:
            return self._failure(tool_call, str(e))

        return ToolResult(
            tool_call_id=tool_call.id,
            content=content,
            success=True,
            tool_name=tool_call.name,
        )

    def _failure(self, tool_call: ToolCall, reason: str) -> ToolResult:
        logger.warning(f"Tool {tool_call.name} failed: {reason}")
        return ToolResult(
            tool_call_id=tool_call.id,
            content=f"tool error: {reason}",
            success=False,
            error=reason,
            tool_name=tool_call.name,
        )

    # -- confinement -------------------------------------------------------

    def is_within_root(self, path: str | Path) -> bool:
        """True if path is the root itself or lies underneath it."""
        path = str(path)
        return path == str(self.root) or path.startswith(self._root_prefix)

    def _is_confined(self, path: str | Path) -> bool:
        # Both the lexical path and the symlink-resolved path must stay inside.
        return self.is_within_root(path) and self.is_within_root(os.path.realpath(path))

    def resolve_path(self, raw: str) -> Path:
        """
        Resolve a provider-supplied path against the root.

        Raises ToolError if the normalized path escapes the root.
        """
        if "\x00" in raw:
            raise ToolError("invalid path: contains NUL byte")
        joined = os.path.normpath(os.path.join(self.root, raw))
        try:
            os.fsencode(joined)
        except UnicodeError as e:
            raise ToolError(f"invalid path: {e}") from e
        if not self._is_confined(joined):
            raise ToolError("access outside project root is not allowed")
        return Path(joined)

    # -- handlers ----------------------------------------------------------

    def _time_now(self, args: dict[str, JSONValue], deadline: Deadline | None) -> str:
        return datetime.now().astimezone().isoformat(timespec="seconds")

    def _read_file(self, args: dict[str, JSONValue], deadline: Deadline | None) -> str:
        target = self.resolve_path(_require_str(args, "path"))
        limit = self.config.max_file_bytes

        try:
            info = target.stat()
        except OSError as e:
            raise ToolError(f"stat file: {e}") from e
        if stat.S_ISDIR(info.st_mode):
            raise ToolError("path is a directory, not a file")
        if info.st_size > limit:
            raise ToolError(f"file too large: {info.st_size} bytes (limit {limit})")

        try:
            with target.open("rb") as f:
                data = f.read(limit + 1)
        except OSError as e:
            raise ToolError(f"read file: {e}") from e
        if len(data) > limit:
            raise ToolError(f"file too large: more than {limit} bytes (limit {limit})")

        return data.decode("utf-8", errors="replace")

    def _list_files(self, args: dict[str, JSONValue], deadline: Deadline | None) -> str:
        target = self.resolve_path(_require_str(args, "path"))

        try:
            info = target.stat()
        except OSError as e:
            raise ToolError(f"stat path: {e}") from e
        if not stat.S_ISDIR(info.st_mode):
            raise ToolError("path is not a directory")

        max_entries = self.config.max_list_entries
        max_bytes = self.config.max_output_bytes
        paths: list[str] = []
        total = 0
        notice = None

        for path in self._walk_files(target):
            if not self._is_confined(path):
                continue
            if len(paths) >= max_entries:
                notice = f"... truncated: listing limited to {max_entries} entries ..."
                break
            size = len(path.encode("utf-8")) + (1 if paths else 0)
            if total + size > max_bytes:
                notice = TRUNCATION_NOTICE
                break
            paths.append(path)
            total += size

        if notice is not None:
            paths.append(notice)
        return "\n".join(paths)

    def _walk_files(self, start: Path) -> Iterator[str]:
        """
        Lazily yield file paths under start, depth first in name order.

        Directories are descended into but not yielded; symlinked
        directories are not followed. The caller may stop at any time.
        """
        stack = [iter(self._sorted_entries(str(start)))]
        while stack:
            entry = next(stack[-1], None)
            if entry is None:
                stack.pop()
                continue
            if entry.is_dir(follow_symlinks=False):
                stack.append(iter(self._sorted_entries(entry.path)))
            else:
                yield entry.path

    def _sorted_entries(self, directory: str) -> list[os.DirEntry[str]]:
        try:
            with os.scandir(directory) as it:
                return sorted(it, key=lambda e: e.name)
        except OSError as e:
            raise ToolError(f"walk dir: {e}") from e

    def _edit_file(self, args: dict[str, JSONValue], deadline: Deadline | None) -> str:
        target = self.resolve_path(_require_str(args, "path"))
        content = _require_str(args, "content", allow_empty=True)
        try:
            data = content.encode("utf-8")
        except UnicodeEncodeError as e:
            raise ToolError(f"invalid content: {e}") from e
        limit = self.config.max_file_bytes

        if len(data) > limit:
            raise ToolError(f"content too large: {len(data)} bytes (limit {limit})")
        if target.is_dir():
            raise ToolError("path is a directory, not a file")

        # Missing parents are created; they are inside the root because target is.
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise ToolError(f"write file: {e}") from e

        return f"wrote {len(data)} bytes to {target}"

    def _run_shell(self, args: dict[str, JSONValue], deadline: Deadline | None) -> str:
        command = _require_str(args, "command")
        timeout = _timeout_arg(args, self.config.shell_timeout)
        if deadline is not None:
            timeout = deadline.bound(timeout)
        if timeout <= 0:
            reason = "run cancelled" if deadline is not None and deadline.cancelled else "run deadline exceeded"
            raise ToolError(f"command not started: {reason}")

        try:
            process = subprocess.Popen(
                command,
                shell=True,
                cwd=self.root,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            return f"exit_code=-1\nfailed to start command: {e}"

        collector = OutputCollector(self.config.max_output_bytes)
        collector.start(process.stdout)
        exit_code, stop_reason = self._wait(process, collector, timeout, deadline)

        text = bytes(collector.data).decode("utf-8", errors="replace")
        if collector.overflowed:
            text += "\n" + TRUNCATION_NOTICE
        if stop_reason:
            text += f"\n... {stop_reason} ..."
        return f"exit_code={exit_code}\n{text}"

    def _wait(
        self,
        process: subprocess.Popen[bytes],
        collector: OutputCollector,
        timeout: float,
        deadline: Deadline | None,
    ) -> tuple[int, str | None]:
        """
        Wait for a process and its output, killing it on timeout or cancellation.

        Returns the exit code (-1 for anything that is not a normal exit)
        and the reason it was stopped, if it was.
        """
        ends_at = time.monotonic() + timeout
        stop_reason = None
        while collector.is_alive() or process.poll() is None:
            if deadline is not None and deadline.cancelled:
                stop_reason = "killed: run cancelled"
                break
            left = ends_at - time.monotonic()
            if left <= 0:
                stop_reason = f"killed after {timeout:g}s timeout"
                break
            wait_for = min(left, _POLL_INTERVAL)
            if collector.is_alive():
                collector.join(wait_for)
            else:
                try:
                    process.wait(timeout=wait_for)
                except subprocess.TimeoutExpired:
                    pass

        if stop_reason is not None:
            logger.warning(f"Shell command {stop_reason}")
            self._kill(process)
            process.wait()
            collector.join(_KILL_GRACE)
            return -1, stop_reason

        code = process.returncode
        return (code if code >= 0 else -1), None

    @staticmethod
    def _kill(process: subprocess.Popen[bytes]) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass

    def _fetch_url(self, args: dict[str, JSONValue], deadline: Deadline | None) -> str:
        url = _require_str(args, "url")
        try:
            parts = urllib.parse.urlsplit(url)
        except ValueError as e:
            raise ToolError("invalid url") from e
        scheme = parts.scheme.lower()
        if not scheme or not parts.hostname:
            raise ToolError("invalid url")
        if scheme not in ("http", "https"):
            raise ToolError(f"unsupported url scheme: {scheme}")
        # httpx rejects some hosts urlsplit accepts, such as bad IDNA labels.
        try:
            host = httpx.URL(url).host
        except (httpx.InvalidURL, ValueError) as e:
            raise ToolError("invalid url") from e
        if not host:
            raise ToolError("invalid url")

        timeout = _timeout_arg(args, self.config.fetch_timeout)
        if deadline is not None:
            timeout = deadline.bound(timeout)
        if timeout <= 0:
            raise ToolError("request timed out: run deadline exceeded")

        headers = {
            "Accept": "*/*",
            "User-Agent": self.config.user_agent,
        }
        client = self._http_client or httpx.Client()
        try:
            with client.stream(
                "GET",
                url,
                headers=headers,
                timeout=timeout,
                follow_redirects=True,
            ) as response:
                data = self._read_body(response, time.monotonic() + timeout, deadline)
                status_code = response.status_code
                content_type = response.headers.get("Content-Type", "")
                encoding = response.encoding or "utf-8"
        except httpx.TimeoutException as e:
            raise ToolError(f"request timed out after {timeout:g}s") from e
        except (httpx.HTTPError, httpx.InvalidURL, UnicodeError) as e:
            raise ToolError(f"request failed: {e}") from e
        finally:
            if self._http_client is None:
                client.close()

        limit = self.config.max_output_bytes
        truncated = len(data) > limit
        if truncated:
            data = data[:limit]

        if is_html_content_type(content_type):
            body = html_to_text(data)
        else:
            try:
                body = data.decode(encoding, errors="replace")
            except LookupError:
                body = data.decode("utf-8", errors="replace")
        if truncated:
            body += "\n" + TRUNCATION_NOTICE

        return f'status={status_code} content_type="{content_type}"\n{body}'

    def _read_body(
        self,
        response: httpx.Response,
        ends_at: float,
        deadline: Deadline | None,
    ) -> bytes:
        """Read at most one byte past the output cap, honouring the timeout."""
        limit = self.config.max_output_bytes
        data = bytearray()
        for chunk in response.iter_bytes():
            data.extend(chunk)
            if len(data) > limit:
                break
            if deadline is not None and deadline.cancelled:
                raise ToolError("request aborted: run cancelled")
            if time.monotonic() > ends_at:
                raise ToolError("request timed out while reading body")
        return bytes(data[:limit + 1])

    def __repr__(self) -> str:
        return f"SandboxedExecutor(root={str(self.root)!r})"


def describe_arguments(arguments: dict[str, Any]) -> str:
    """Short one-line rendering of tool arguments for console output."""
    parts = []
    for key, value in arguments.items():
        text = repr(value)
        if len(text) > 60:
            text = text[:57] + "..."
        parts.append(f"{key}={text}")
    return ", ".join(parts)
