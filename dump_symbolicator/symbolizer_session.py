"""
External Symbolizer Session

Owns one long-lived symbolizer subprocess for a target binary. Requests are
written as ``<address>`` followed by a blank line. The tool answers with a
block of lines ending in a blank terminator; the first line holds the
resolved name (llvm-symbolizer adds a file:line line and an extra blank for
the empty request line). Blank lines ahead of a block are skipped, and a
block that never terminates means the session is out of sync.

The process is started on the first request and kept for the rest of the
run. Every read is bounded by a timeout: a stalled symbolizer leaves that
frame unresolved and is killed, and the next request starts a fresh one.
"""
from __future__ import annotations

import queue
import shlex
import subprocess
import threading
from typing import List, Optional

from .config import DEFAULT_SYMBOLIZER, DEFAULT_SYMBOLIZER_TIMEOUT, safe_print
from .frames import OUTSIDE_RUNTIME_SENTINEL
from .native_map import NativeOffsetMap

UNKNOWN_SYMBOL = "??"
BINARY_PLACEHOLDER = "{binary}"


def is_outside_runtime(address: Optional[str]) -> bool:
    return address is not None and address.strip() == OUTSIDE_RUNTIME_SENTINEL


def build_command(symbolizer: str, binary: str) -> List[str]:
    """Command line for the symbolizer.

    ``{binary}`` in the symbolizer string is replaced by the target path;
    without it the llvm-symbolizer style ``--obj=<binary>`` is appended.
    """
    args = shlex.split(symbolizer)
    if any(BINARY_PLACEHOLDER in arg for arg in args):
        return [arg.replace(BINARY_PLACEHOLDER, binary) for arg in args]
    return args + [f"--obj={binary}"]


class SymbolizerSession:
    """One symbolizer subprocess, one request at a time. Not thread-safe."""

    MAX_RESTARTS = 3
    # Function + location pairs, inlined frames included
    MAX_ANSWER_LINES = 64

    def __init__(self, binary: str, symbolizer: str = DEFAULT_SYMBOLIZER,
                 timeout: float = DEFAULT_SYMBOLIZER_TIMEOUT, verbose: bool = True):
        self.binary = binary
        self.command = build_command(symbolizer, binary)
        self.timeout = timeout
        self.verbose = verbose

        self._process: Optional[subprocess.Popen] = None
        self._lines: Optional[queue.Queue] = None
        self.unavailable = False

        self.stats = {
            'requests': 0,
            'resolved': 0,
            'timeouts': 0,
            'starts': 0,
        }

    def _log(self, message: str):
        if self.verbose:
            safe_print(f"[SYMBOLIZER] {message}")

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def __enter__(self) -> "SymbolizerSession":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    def _start(self) -> bool:
        if self.stats['starts'] > self.MAX_RESTARTS:
            self._log("Too many restarts - native symbolization disabled for this run")
            self.unavailable = True
            return False

        self._log(f"Starting: {' '.join(self.command)}")
        try:
            process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            self._log(f"- Could not start symbolizer: {e}")
            self.unavailable = True
            return False

        lines: queue.Queue = queue.Queue()

        def pump():
            for line in process.stdout:
                lines.put(line.rstrip("\r\n"))
            lines.put(None)

        threading.Thread(target=pump, daemon=True).start()
        self._process = process
        self._lines = lines
        self.stats['starts'] += 1
        return True

    def _read_line(self) -> Optional[str]:
        """Next output line, or None on timeout or end of output."""
        try:
            line = self._lines.get(timeout=self.timeout)
        except queue.Empty:
            self.stats['timeouts'] += 1
            self._log(f"- No answer within {self.timeout:g}s - restarting symbolizer")
            self._stop()
            return None
        if line is None:
            self._log("- Symbolizer exited unexpectedly")
            self._stop()
        return line

    def _read_answer(self) -> Optional[List[str]]:
        """Lines of one answer block without its blank terminator.

        Returns None when the process timed out, exited or went out of sync;
        it has been stopped in every such case.
        """
        line = self._read_line()
        while line is not None and not line.strip():
            line = self._read_line()

        block: List[str] = []
        while line is not None:
            if not line.strip():
                return block
            if len(block) >= self.MAX_ANSWER_LINES:
                self._log("- Answer block has no terminator - symbolizer out of sync, restarting")
                self._stop()
                return None
            block.append(line)
            line = self._read_line()
        return None

    def _stop(self):
        process, self._process, self._lines = self._process, None, None
        if process is None:
            return
        try:
            if process.stdin:
                process.stdin.close()
        except OSError:
            pass
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()

    def shutdown(self):
        """Terminate the subprocess. Safe to call repeatedly or before any request."""
        if self._process is not None:
            self._log("Shutting down")
        self._stop()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def symbolize(self, address: str) -> Optional[str]:
        """Resolve one address, or None if it cannot be resolved."""
        if is_outside_runtime(address):
            return None
        if self.unavailable:
            return None
        if not self.running and not self._start():
            return None

        self.stats['requests'] += 1
        try:
            self._process.stdin.write(f"{address}\n\n")
            self._process.stdin.flush()
        except OSError as e:
            self._log(f"- Write failed: {e}")
            self._stop()
            return None

        answer = self._read_answer()
        if not answer:
            return None

        name = answer[0].strip()
        if not name or name == UNKNOWN_SYMBOL:
            return None
        self.stats['resolved'] += 1
        return name


class NativeResolver:
    """Offline native index first, external symbolizer second."""

    def __init__(self, offset_map: Optional[NativeOffsetMap] = None,
                 session: Optional[SymbolizerSession] = None):
        self.offset_map = offset_map
        self.session = session

    def try_resolve(self, address: str) -> Optional[str]:
        if is_outside_runtime(address):
            return None
        if self.offset_map is not None:
            name = self.offset_map.try_resolve(address)
            if name is not None:
                return name
        if self.session is not None:
            return self.session.symbolize(address)
        return None

    def shutdown(self):
        if self.session is not None:
            self.session.shutdown()
