"""
Tests for the SandboxedExecutor - the only way to affect the world.

These tests verify the executor's bounds: filesystem confinement,
size caps, timeouts and URL scheme checks. Failures must come back as
tool results, never as exceptions.
"""

import io
import os
import threading
import time
from datetime import datetime

import httpx
import pytest

from kutagent.config import ToolConfig
from kutagent.deadline import Deadline
from kutagent.tools import (
    TRUNCATION_NOTICE,
    OutputCollector,
    SandboxedExecutor,
    _timeout_arg,
    html_to_text,
)
from kutagent.types import ToolCall


def call(name: str, **arguments: object) -> ToolCall:
    return ToolCall(id=f"call_{name}", name=name, arguments=dict(arguments))


@pytest.fixture
def root(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    return root


@pytest.fixture
def executor(root):
    return SandboxedExecutor(root)


class TestDispatch:
    """Test dispatch by tool name and result tagging."""

    def test_unknown_tool(self, executor) -> None:
        """Unknown tool names should produce a soft failure."""
        result = executor.execute(ToolCall(id="c1", name="rm_rf", arguments={}))

        assert not result.success
        assert result.content == "tool error: unknown tool: rm_rf"
        assert result.tool_call_id == "c1"
        assert result.tool_name == "rm_rf"

    def test_result_tagged_with_call(self, executor) -> None:
        """Results should carry the call id and tool name."""
        result = executor.execute(ToolCall(id="abc", name="time_now", arguments={}))

        assert result.success
        assert result.tool_call_id == "abc"
        assert result.tool_name == "time_now"

    def test_exposes_all_tool_names(self, executor) -> None:
        assert executor.tool_names == [
            "time_now", "read_file", "list_files", "edit_file", "run_shell", "fetch_url",
        ]


class TestTimeNow:
    """Test the clock tool."""

    def test_returns_rfc3339_with_offset(self, executor) -> None:
        result = executor.execute(call("time_now"))

        parsed = datetime.fromisoformat(result.content)
        assert parsed.tzinfo is not None
        assert "T" in result.content


class TestConfinement:
    """Test that filesystem tools never leave the root."""

    @pytest.fixture
    def outside_file(self, tmp_path):
        path = tmp_path / "secret.txt"
        path.write_text("top secret")
        return path

    @pytest.mark.parametrize("path", [
        "../secret.txt",
        "sub/../../secret.txt",
        "/etc/passwd",
        "..",
    ])
    def test_read_file_rejects_escape(self, executor, outside_file, path) -> None:
        """Paths resolving outside the root should be rejected."""
        result = executor.execute(call("read_file", path=path))

        assert not result.success
        assert "outside project root" in result.content
        assert "top secret" not in result.content

    def test_list_files_rejects_escape(self, executor, outside_file) -> None:
        result = executor.execute(call("list_files", path=".."))

        assert not result.success
        assert "outside project root" in result.content

    def test_edit_file_rejects_escape(self, executor, tmp_path) -> None:
        """A rejected write must not touch the filesystem."""
        result = executor.execute(call("edit_file", path="../evil.txt", content="x"))

        assert not result.success
        assert "outside project root" in result.content
        assert not (tmp_path / "evil.txt").exists()

    def test_edit_file_rejects_escape_via_new_directories(self, executor, tmp_path) -> None:
        result = executor.execute(call("edit_file", path="a/b/../../../evil/x.txt", content="x"))

        assert not result.success
        assert not (tmp_path / "evil").exists()

    def test_sibling_with_common_prefix_is_outside(self, root, executor) -> None:
        """root2 shares a prefix with root but is not inside it."""
        sibling = root.parent / (root.name + "2")
        sibling.mkdir()
        (sibling / "file.txt").write_text("sibling")

        result = executor.execute(call("read_file", path=f"../{sibling.name}/file.txt"))

        assert not result.success
        assert "outside project root" in result.content

    def test_symlink_escape_rejected(self, root, executor, outside_file) -> None:
        """A symlink pointing out of the root should not be followed."""
        os.symlink(outside_file.parent, root / "link")

        result = executor.execute(call("read_file", path="link/secret.txt"))

        assert not result.success
        assert "outside project root" in result.content

    def test_absolute_path_inside_root_allowed(self, root, executor) -> None:
        (root / "a.txt").write_text("inside")

        result = executor.execute(call("read_file", path=str(root / "a.txt")))

        assert result.success
        assert result.content == "inside"

    def test_nul_byte_rejected(self, executor) -> None:
        result = executor.execute(call("read_file", path="a\x00b"))

        assert not result.success
        assert "invalid path" in result.content

    @pytest.mark.parametrize("tool", ["read_file", "list_files", "edit_file"])
    def test_unencodable_path_rejected(self, executor, tool) -> None:
        """A lone surrogate from a JSON escape cannot name a file."""
        result = executor.execute(call(tool, path="a\ud800.txt", content="x"))

        assert not result.success
        assert result.content.startswith("tool error: invalid path")

    def test_resolve_path_normalizes(self, root, executor) -> None:
        resolved = executor.resolve_path("sub/../a.txt")

        assert resolved == executor.root / "a.txt"


class TestReadFile:
    """Test read_file."""

    def test_reads_content(self, root, executor) -> None:
        (root / "notes.txt").write_text("hello\nworld\n")

        result = executor.execute(call("read_file", path="notes.txt"))

        assert result.success
        assert result.content == "hello\nworld\n"

    def test_missing_argument(self, executor) -> None:
        result = executor.execute(call("read_file"))

        assert not result.success
        assert result.content == "tool error: missing required argument: path"

    def test_wrong_argument_type(self, executor) -> None:
        """Type mismatches should fail softly, not raise."""
        result = executor.execute(call("read_file", path=42))

        assert not result.success
        assert "must be a string" in result.content

    def test_missing_file(self, executor) -> None:
        result = executor.execute(call("read_file", path="nope.txt"))

        assert not result.success
        assert "stat file" in result.content

    def test_directory(self, root, executor) -> None:
        (root / "dir").mkdir()

        result = executor.execute(call("read_file", path="dir"))

        assert not result.success
        assert "is a directory" in result.content

    def test_file_over_limit(self, root, executor) -> None:
        """Files above 1 MiB should be refused outright."""
        (root / "big.bin").write_bytes(b"a" * ((1 << 20) + 1))

        result = executor.execute(call("read_file", path="big.bin"))

        assert not result.success
        assert "file too large" in result.content
        assert len(result.content) < 200

    def test_file_at_limit(self, root) -> None:
        executor = SandboxedExecutor(root, ToolConfig(max_file_bytes=8))
        (root / "exact.txt").write_text("12345678")

        result = executor.execute(call("read_file", path="exact.txt"))

        assert result.success
        assert result.content == "12345678"

    def test_invalid_utf8_replaced(self, root, executor) -> None:
        (root / "bin.dat").write_bytes(b"ok\xff")

        result = executor.execute(call("read_file", path="bin.dat"))

        assert result.success
        assert result.content.startswith("ok")


class TestListFiles:
    """Test list_files."""

    def test_lists_files_depth_first_in_name_order(self, root, executor) -> None:
        """Directories are walked, not listed."""
        (root / "b" / "d").mkdir(parents=True)
        (root / "a.txt").write_text("")
        (root / "b" / "c.txt").write_text("")
        (root / "b" / "d" / "e.txt").write_text("")
        (root / "z.txt").write_text("")

        result = executor.execute(call("list_files", path="."))

        base = executor.root
        assert result.success
        assert result.content.split("\n") == [
            str(base / "a.txt"),
            str(base / "b" / "c.txt"),
            str(base / "b" / "d" / "e.txt"),
            str(base / "z.txt"),
        ]

    def test_subdirectory(self, root, executor) -> None:
        (root / "src").mkdir()
        (root / "src" / "main.py").write_text("")
        (root / "other.txt").write_text("")

        result = executor.execute(call("list_files", path="src"))

        assert result.content == str(executor.root / "src" / "main.py")

    def test_empty_directory(self, executor) -> None:
        result = executor.execute(call("list_files", path="."))

        assert result.success
        assert result.content == ""

    def test_not_a_directory(self, root, executor) -> None:
        (root / "file.txt").write_text("")

        result = executor.execute(call("list_files", path="file.txt"))

        assert not result.success
        assert "not a directory" in result.content

    def test_missing_directory(self, executor) -> None:
        result = executor.execute(call("list_files", path="missing"))

        assert not result.success
        assert "stat path" in result.content

    def test_entry_cap(self, root, executor) -> None:
        """6000 files should yield at most 5000 paths plus a marker."""
        many = root / "many"
        many.mkdir()
        for i in range(6000):
            (many / f"f{i:05d}.txt").touch()

        result = executor.execute(call("list_files", path="many"))

        lines = result.content.split("\n")
        assert result.success
        assert len(lines) == 5001
        assert "truncated" in lines[-1]
        assert all(line.startswith(str(executor.root)) for line in lines[:-1])

    def test_exactly_at_entry_cap_not_truncated(self, root) -> None:
        executor = SandboxedExecutor(root, ToolConfig(max_list_entries=3))
        for name in ("a", "b", "c"):
            (root / name).touch()

        result = executor.execute(call("list_files", path="."))

        assert "truncated" not in result.content
        assert len(result.content.split("\n")) == 3

    def test_output_byte_cap(self, root) -> None:
        executor = SandboxedExecutor(root, ToolConfig(max_output_bytes=len(str(root)) * 3))
        for i in range(20):
            (root / f"file{i:02d}.txt").touch()

        result = executor.execute(call("list_files", path="."))

        lines = result.content.split("\n")
        assert lines[-1] == TRUNCATION_NOTICE
        assert len("\n".join(lines[:-1]).encode()) <= executor.config.max_output_bytes

    def test_escaping_symlink_skipped(self, root, executor, tmp_path) -> None:
        outside = tmp_path / "outside.txt"
        outside.write_text("x")
        os.symlink(outside, root / "link.txt")
        (root / "real.txt").write_text("")

        result = executor.execute(call("list_files", path="."))

        assert result.content == str(executor.root / "real.txt")


class TestEditFile:
    """Test edit_file."""

    def test_unencodable_content_rejected(self, root, executor) -> None:
        result = executor.execute(call("edit_file", path="bad.txt", content="ok \ud800"))

        assert not result.success
        assert result.content.startswith("tool error: invalid content")
        assert not (root / "bad.txt").exists()

    def test_creates_file(self, root, executor) -> None:
        result = executor.execute(call("edit_file", path="new.txt", content="hi"))

        assert result.success
        assert (root / "new.txt").read_text() == "hi"
        assert "wrote 2 bytes" in result.content

    def test_overwrites_file(self, root, executor) -> None:
        (root / "f.txt").write_text("old content")

        executor.execute(call("edit_file", path="f.txt", content="new"))

        assert (root / "f.txt").read_text() == "new"

    def test_creates_parent_directories(self, root, executor) -> None:
        result = executor.execute(call("edit_file", path="a/b/c.txt", content="deep"))

        assert result.success
        assert (root / "a" / "b" / "c.txt").read_text() == "deep"

    def test_empty_content_allowed(self, root, executor) -> None:
        result = executor.execute(call("edit_file", path="empty.txt", content=""))

        assert result.success
        assert (root / "empty.txt").read_text() == ""

    def test_missing_content(self, root, executor) -> None:
        result = executor.execute(call("edit_file", path="x.txt"))

        assert not result.success
        assert "missing required argument: content" in result.content
        assert not (root / "x.txt").exists()

    def test_missing_path(self, executor) -> None:
        result = executor.execute(call("edit_file", content="x"))

        assert result.content == "tool error: missing required argument: path"

    def test_directory_target(self, root, executor) -> None:
        (root / "dir").mkdir()

        result = executor.execute(call("edit_file", path="dir", content="x"))

        assert not result.success
        assert "is a directory" in result.content

    def test_content_over_limit(self, root) -> None:
        executor = SandboxedExecutor(root, ToolConfig(max_file_bytes=4))

        result = executor.execute(call("edit_file", path="f.txt", content="12345"))

        assert not result.success
        assert "content too large" in result.content
        assert not (root / "f.txt").exists()


class TestRunShell:
    """Test run_shell."""

    def test_echo(self, executor) -> None:
        result = executor.execute(call("run_shell", command="echo hello"))

        assert result.success
        assert result.content == "exit_code=0\nhello\n"

    def test_non_zero_exit_is_not_a_failure(self, executor) -> None:
        result = executor.execute(call("run_shell", command="echo oops; exit 3"))

        assert result.success
        assert result.content.startswith("exit_code=3\n")
        assert "oops" in result.content

    def test_stderr_combined(self, executor) -> None:
        result = executor.execute(call("run_shell", command="echo out; echo err 1>&2"))

        assert "out" in result.content
        assert "err" in result.content

    def test_pipes_work(self, executor) -> None:
        result = executor.execute(call("run_shell", command="printf 'b\\na\\n' | sort"))

        assert result.content == "exit_code=0\na\nb\n"

    def test_runs_in_root(self, root, executor) -> None:
        (root / "marker.txt").write_text("")

        result = executor.execute(call("run_shell", command="ls"))

        assert "marker.txt" in result.content

    def test_missing_command(self, executor) -> None:
        result = executor.execute(call("run_shell"))

        assert not result.success
        assert result.content == "tool error: missing required argument: command"

    def test_timeout_kills_command(self, executor) -> None:
        """A 5s sleep with a 1s timeout should come back in about 1s."""
        start = time.monotonic()
        result = executor.execute(call("run_shell", command="sleep 5; echo finished", timeout_sec=1))
        elapsed = time.monotonic() - start

        assert elapsed < 3
        assert result.success
        assert result.content.startswith("exit_code=-1\n")
        assert "finished" not in result.content
        assert "timeout" in result.content

    def test_run_deadline_bounds_command(self, executor) -> None:
        """The run deadline wins over a longer per-call timeout."""
        start = time.monotonic()
        result = executor.execute(
            call("run_shell", command="sleep 5", timeout_sec=30),
            deadline=Deadline(0.5),
        )

        assert time.monotonic() - start < 3
        assert result.content.startswith("exit_code=-1")

    def test_cancelled_deadline_does_not_start_command(self, root, executor) -> None:
        deadline = Deadline(30)
        deadline.cancel()

        result = executor.execute(call("run_shell", command="touch started.txt"), deadline=deadline)

        assert not result.success
        assert result.content == "tool error: command not started: run cancelled"
        assert not (root / "started.txt").exists()

    def test_expired_deadline_does_not_start_command(self, root, executor) -> None:
        deadline = Deadline(0.01)
        time.sleep(0.05)

        result = executor.execute(call("run_shell", command="touch started.txt"), deadline=deadline)

        assert result.content == "tool error: command not started: run deadline exceeded"
        assert not (root / "started.txt").exists()

    def test_cancel_while_running_kills_command(self, executor) -> None:
        deadline = Deadline(30)
        threading.Timer(0.3, deadline.cancel).start()

        start = time.monotonic()
        result = executor.execute(call("run_shell", command="sleep 5"), deadline=deadline)

        assert time.monotonic() - start < 3
        assert result.content.startswith("exit_code=-1")
        assert "run cancelled" in result.content

    def test_output_cap(self, root) -> None:
        executor = SandboxedExecutor(root, ToolConfig(max_output_bytes=10))

        result = executor.execute(call("run_shell", command="yes | head -c 1000"))

        assert result.content == "exit_code=0\ny\ny\ny\ny\ny\n\n" + TRUNCATION_NOTICE

    def test_output_beyond_cap_is_discarded(self, root) -> None:
        """A command writing far more than the cap still finishes normally."""
        executor = SandboxedExecutor(root, ToolConfig(max_output_bytes=100))

        result = executor.execute(call("run_shell", command="head -c 5000000 /dev/zero"))

        assert result.content == "exit_code=0\n" + "\x00" * 100 + "\n" + TRUNCATION_NOTICE


class TestOutputCollector:
    """Test bounded capture of subprocess output."""

    def test_keeps_only_limit_bytes(self) -> None:
        stream = io.BytesIO(b"x" * 1_000_000)
        collector = OutputCollector(limit=10)

        collector.collect(stream)

        assert collector.data == b"x" * 10
        assert collector.overflowed
        assert stream.closed

    def test_output_at_limit_is_not_overflow(self) -> None:
        collector = OutputCollector(limit=10)

        collector.collect(io.BytesIO(b"x" * 10))

        assert collector.data == b"x" * 10
        assert not collector.overflowed

    def test_background_thread(self) -> None:
        collector = OutputCollector(limit=1024)

        collector.start(io.BytesIO(b"hello"))
        collector.join(5)

        assert not collector.is_alive()
        assert collector.data == b"hello"


class TestTimeoutArgument:
    """Test parsing of the optional timeout_sec argument."""

    @pytest.mark.parametrize("value,expected", [
        (5, 5.0),
        (2.5, 2.5),
        (0, 30.0),
        (-1, 30.0),
        ("10", 30.0),
        (True, 30.0),
        (None, 30.0),
    ])
    def test_values(self, value, expected) -> None:
        assert _timeout_arg({"timeout_sec": value}, 30.0) == expected

    def test_absent(self) -> None:
        assert _timeout_arg({}, 20.0) == 20.0


class RecordingTransport:
    """Mock HTTP handler that records requests."""

    def __init__(self, response: httpx.Response | Exception) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def fetch_executor(root, response, config=None):
    transport = RecordingTransport(response)
    client = httpx.Client(transport=httpx.MockTransport(transport))
    return SandboxedExecutor(root, config, http_client=client), transport


class TestFetchUrl:
    """Test fetch_url."""

    @pytest.mark.parametrize("url,reason", [
        ("ftp://example.com/file", "unsupported url scheme: ftp"),
        ("file:///etc/passwd", "invalid url"),
        ("javascript:alert(1)", "invalid url"),
        ("example.com/page", "invalid url"),
        ("/relative/path", "invalid url"),
        ("http://[::1", "invalid url"),
        ("http://ex\u00e4mple..com/", "invalid url"),
        ("http://xn--a.com/", "invalid url"),
    ])
    def test_rejects_bad_urls_without_network(self, root, url, reason) -> None:
        executor, transport = fetch_executor(root, httpx.Response(200))

        result = executor.execute(call("fetch_url", url=url))

        assert not result.success
        assert result.content == f"tool error: {reason}"
        assert transport.requests == []

    def test_missing_url(self, root) -> None:
        executor, transport = fetch_executor(root, httpx.Response(200))

        result = executor.execute(call("fetch_url"))

        assert result.content == "tool error: missing required argument: url"
        assert transport.requests == []

    def test_plain_text(self, root) -> None:
        executor, transport = fetch_executor(root, httpx.Response(
            200,
            headers={"Content-Type": "text/plain; charset=utf-8"},
            content=b"  raw   text  ",
        ))

        result = executor.execute(call("fetch_url", url="https://example.com/a.txt"))

        assert result.success
        assert result.content == 'status=200 content_type="text/plain; charset=utf-8"\n  raw   text  '

    def test_sends_identifying_headers(self, root) -> None:
        executor, transport = fetch_executor(root, httpx.Response(200, content=b""))

        executor.execute(call("fetch_url", url="http://example.com/"))

        request = transport.requests[0]
        assert request.method == "GET"
        assert request.headers["User-Agent"].startswith("KutAgent/1.0")
        assert request.headers["Accept"] == "*/*"

    def test_uppercase_scheme_accepted(self, root) -> None:
        executor, transport = fetch_executor(root, httpx.Response(200, content=b"ok"))

        result = executor.execute(call("fetch_url", url="HTTP://example.com/"))

        assert result.success
        assert len(transport.requests) == 1

    def test_html_converted_to_text(self, root) -> None:
        page = (
            b"<html><head><title>T</title><style>p { color: red }</style>"
            b"<script>var x = 1;</script></head>"
            b"<body><p>Hello &amp;\n\n   <b>world</b></p>"
            b"<noscript>enable js</noscript></body></html>"
        )
        executor, _ = fetch_executor(root, httpx.Response(
            200, headers={"Content-Type": "text/html; charset=utf-8"}, content=page,
        ))

        result = executor.execute(call("fetch_url", url="https://example.com/"))

        assert result.content == 'status=200 content_type="text/html; charset=utf-8"\nT Hello & world'

    def test_non_success_status_is_reported(self, root) -> None:
        executor, _ = fetch_executor(root, httpx.Response(
            404, headers={"Content-Type": "text/plain"}, content=b"not found",
        ))

        result = executor.execute(call("fetch_url", url="https://example.com/missing"))

        assert result.success
        assert result.content.startswith("status=404 ")
        assert result.content.endswith("not found")

    def test_body_truncated(self, root) -> None:
        executor, _ = fetch_executor(
            root,
            httpx.Response(200, headers={"Content-Type": "text/plain"}, content=b"x" * 100),
            ToolConfig(max_output_bytes=10),
        )

        result = executor.execute(call("fetch_url", url="https://example.com/"))

        body = result.content.split("\n", 1)[1]
        assert body == "x" * 10 + "\n" + TRUNCATION_NOTICE

    def test_transport_error_is_soft(self, root) -> None:
        executor, _ = fetch_executor(root, httpx.ConnectError("connection refused"))

        result = executor.execute(call("fetch_url", url="https://example.com/"))

        assert not result.success
        assert result.content.startswith("tool error: request failed")

    def test_timeout_is_soft(self, root) -> None:
        executor, _ = fetch_executor(root, httpx.ReadTimeout("too slow"))

        result = executor.execute(call("fetch_url", url="https://example.com/", timeout_sec=1))

        assert not result.success
        assert "timed out" in result.content

    def test_expired_deadline_skips_request(self, root) -> None:
        executor, transport = fetch_executor(root, httpx.Response(200))
        deadline = Deadline(10)
        deadline.cancel()

        result = executor.execute(call("fetch_url", url="https://example.com/"), deadline=deadline)

        assert not result.success
        assert transport.requests == []


class TestHtmlToText:
    """Test HTML rendering to visible text."""

    def test_strips_tags_and_collapses_whitespace(self) -> None:
        assert html_to_text("<div>  a\n<span>b</span>\t c </div>") == "a b c"

    def test_unescapes_entities(self) -> None:
        assert html_to_text("<p>&lt;tag&gt; &quot;q&quot; &#169;</p>") == '<tag> "q" ©'

    def test_drops_invisible_subtrees(self) -> None:
        text = html_to_text(
            "<p>keep</p><script>drop()</script><style>.x{}</style>"
            "<noscript><p>drop too</p></noscript><!-- comment -->"
        )
        assert text == "keep"
