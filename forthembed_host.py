#!/usr/bin/env python3
# forthembed_host.py
#
# Couche host de l'interpréteur embarqué :
# - API de liaison (make_state, compile_script, run, run_function, push, pop,
#   define_constant, define_native, release)
# - Session : un MachineState + les programmes qu'il a exécutés, dot-commands
# - ForthHostCore : plusieurs sessions indépendantes, chacune sur son thread,
#   sortie texte collectée dans stdout_queue
#
# Pas de REPL ni d'I/O terminal ici (voir forthembed_repl.py).

from __future__ import annotations

import io
import logging
import queue
import threading
from typing import Any, Dict, List, Optional, TextIO, Tuple, Union

from forthembed_errors import ForthError
from forthembed_lexer import Program, TokenKind, compile_source
from forthembed_state import (
    DEFAULT_CAPACITIES,
    BindingKind,
    Capacities,
    MachineState,
    NativeFunction,
)
from forthembed_vm_core import Evaluator, call_function, call_native, scan

logger = logging.getLogger(__name__)


# ============================================================
# API de liaison host
# ============================================================

def make_state(data_capacity: int, memory_capacity: int, return_capacity: int,
               dictionary_capacity: int, native_capacity: int, *,
               out: Optional[TextIO] = None) -> MachineState:
    caps = Capacities(data_capacity, memory_capacity, return_capacity, dictionary_capacity, native_capacity)
    return MachineState(caps, out=out)


def make_default_state(*, out: Optional[TextIO] = None) -> MachineState:
    return MachineState(DEFAULT_CAPACITIES, out=out)


def compile_script(source: str) -> Program:
    return compile_source(source)


def run(state: MachineState, program: Program) -> None:
    """Execute the whole program."""
    Evaluator(state, program).run()


def run_function(state: MachineState, program: Optional[Program], name: str) -> bool:
    """
    Execute a function (or native) already in the dictionary.
    Returns False when `name` is not bound to something callable.
    """
    state.check_alive()
    b = state.dictionary.find(name)
    if b is None:
        return False
    if b.kind is BindingKind.NATIVE:
        call_native(state, b)
        return True
    if b.kind is not BindingKind.FUNCTION:
        return False
    if b.program is None:
        if program is None:
            return False
        Evaluator(state, program).run_body(b.payload)
    else:
        call_function(state, b)
    return True


def push(state: MachineState, value: int) -> None:
    state.check_alive()
    state.push(value)


def pop(state: MachineState) -> int:
    state.check_alive()
    return state.pop()


def define_constant(state: MachineState, name: str, value: int) -> None:
    state.check_alive()
    state.dictionary.define(name, BindingKind.CONSTANT, value)


def define_native(state: MachineState, name: str, callback: NativeFunction) -> None:
    state.check_alive()
    state.dictionary.ensure_room(name)
    slot = state.natives.register(callback)
    state.dictionary.define(name, BindingKind.NATIVE, slot)
    logger.debug("native %r registered in slot %d", name, slot)


def release(obj: Union[MachineState, Program]) -> None:
    if isinstance(obj, Program):
        obj.release()
    elif isinstance(obj, MachineState):
        obj.release()
    else:
        raise TypeError(f"cannot release {type(obj).__name__}")


# ============================================================
# Session : un état + ses programmes
# ============================================================

DOT_CMDS = {".dict", ".help", ".mem", ".rstack", ".see", ".stack"}


class _SessionOut:
    """Writer installed as the state's output; forwards to the session."""

    def __init__(self, session: "Session") -> None:
        self._session = session

    def write(self, text: str) -> int:
        self._session._write(text)
        return len(text)

    def flush(self) -> None:
        pass


class Session:
    """
    One interpreter instance driven by the host.

    - garde les Program compilés vivants (les fonctions pointent dedans)
    - interpret(source) compile + exécute et renvoie la sortie produite
    - peut consommer une inbox de messages sur un thread dédié (start())
    """

    def __init__(self, pid: int = 0, *, host: Optional["ForthHostCore"] = None,
                 capacities: Capacities = DEFAULT_CAPACITIES) -> None:
        self.pid = pid
        self.host = host
        self.state = MachineState(capacities, out=_SessionOut(self))  # type: ignore[arg-type]
        self.programs: List[Program] = []
        self.inbox: "queue.Queue[Optional[Dict[str, Any]]]" = queue.Queue()
        self.alive: bool = True
        self.thread: Optional[threading.Thread] = None
        self._capture: Optional[io.StringIO] = None
        self._pending = 0
        self._pending_lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()

    # ----------------- IO -----------------

    def _write(self, text: str) -> None:
        if not text:
            return
        if self._capture is not None:
            self._capture.write(text)
        if self.host is not None:
            self.host.handle_stdout(self.pid, text)

    # ----------------- exécution -----------------

    def interpret(self, source: str) -> str:
        """Compile and run `source`; returns the text it printed. ForthError propagates."""
        program = compile_script(source)
        self.programs.append(program)
        self._capture = io.StringIO()
        try:
            run(self.state, program)
            return self._capture.getvalue()
        finally:
            self._capture = None

    def run_function(self, name: str) -> bool:
        last = self.programs[-1] if self.programs else None
        return run_function(self.state, last, name)

    def release(self) -> int:
        """Release the state and every program; returns the number of texts freed."""
        freed = sum(p.release() for p in self.programs)
        self.programs.clear()
        self.state.release()
        return freed

    # ----------------- inbox / thread -----------------

    def post(self, msg: Dict[str, Any]) -> None:
        with self._pending_lock:
            self._pending += 1
            self._idle.clear()
        self.inbox.put(msg)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self._idle.wait(timeout)

    def _handle_msg(self, msg: Dict[str, Any]) -> None:
        kind = msg.get("type")
        try:
            if kind == "stdin":
                self.interpret(msg["line"])
            elif kind == "call":
                if not self.run_function(msg["name"]):
                    self._write(f"error: no function named {msg['name']!r}\n")
            else:
                self._write(f"error: unknown message type {kind!r}\n")
        except ForthError as e:
            logger.warning("session %d: %s", self.pid, e)
            self._write(f"error: {e}\n")
        except Exception as e:
            logger.exception("session %d: unexpected failure", self.pid)
            self._write(f"error: {type(e).__name__}: {e}\n")

    def _worker(self) -> None:
        try:
            while True:
                msg = self.inbox.get()
                try:
                    if msg is None:
                        break
                    self._handle_msg(msg)
                finally:
                    with self._pending_lock:
                        if msg is not None:
                            self._pending -= 1
                        if self._pending == 0:
                            self._idle.set()
        finally:
            # le thread est fini, quelle qu'en soit la raison
            self.alive = False
            self._idle.set()

    def start(self) -> None:
        self.alive = True
        self.thread = threading.Thread(target=self._worker, daemon=True)
        self.thread.start()

    def stop(self) -> None:
        """Ask the worker to finish after the messages already queued."""
        self.alive = False
        self.inbox.put(None)

    # ----------------- dot-commands -----------------

    def _dotcmd_dispatch(self):
        return {
            ".help": self._dot_help,
            ".stack": self._dot_stack,
            ".rstack": self._dot_rstack,
            ".dict": self._dot_dict,
            ".see": self._dot_see,
            ".mem": self._dot_mem,
        }

    def _dot_help(self, args, out):
        out.write(".stack .rstack .dict [.see <w>] [.mem <n>]\n")

    def _dot_stack(self, args, out):
        d = self.state.data
        out.write(f"<{len(d)}> " + " ".join(map(str, d)) + " \n")

    def _dot_rstack(self, args, out):
        r = self.state.rstack
        out.write(f"<{len(r)}> " + " ".join(map(str, r)) + " \n")

    def _dot_dict(self, args, out):
        names = self.state.dictionary.names()
        filt = args[0] if args else None
        if filt:
            names = [n for n in names if filt in n]
        out.write(" ".join(names) + "\n")

    def _dot_see(self, args, out):
        if not args:
            out.write("unknown: \n"); return
        b = self.state.dictionary.find(args[0])
        if b is None:
            out.write(f"unknown: {args[0]}\n"); return
        if b.kind is not BindingKind.FUNCTION or b.program is None or b.program.released:
            out.write(b.describe() + "\n"); return
        end = scan(b.program, b.payload - 1, None, TokenKind.SEMICOLON)
        body = b.program.tokens[b.payload:end]
        out.write(f": {b.name} " + " ".join(str(t) for t in body) + " ;\n")

    def _dot_mem(self, args, out):
        mem = self.state.memory
        n = mem.top
        if args:
            try:
                n = int(args[0])
            except ValueError:
                n = -1
            if n < 0:
                out.write("usage: .mem [n]   (n >= 0)\n"); return
        out.write(f"HERE={mem.top} " + " ".join(map(str, mem.cells[:min(n, mem.top)])) + "\n")

    def handle_dot_command(self, line: str, out) -> None:
        parts = line.split()
        if not parts:
            return
        cmd, args = parts[0], parts[1:]
        h = self._dotcmd_dispatch().get(cmd)
        if not h:
            out.write(f"unknown dot-cmd: {cmd}\n")
            return
        h(args, out)


# ============================================================
# ForthHostCore : plusieurs sessions indépendantes
# ============================================================

class ForthHostCore:
    """
    Host core without any terminal I/O.

    - maintient la table des sessions (pid -> Session)
    - new_session / kill_session / send_line / call_function
    - toute sortie texte des sessions arrive dans stdout_queue (pid, text)
    """

    def __init__(self, capacities: Capacities = DEFAULT_CAPACITIES) -> None:
        self.capacities = capacities
        self.sessions: Dict[int, Session] = {}
        self.meta: Dict[int, Dict[str, Any]] = {}
        self._next_pid: int = 1
        self.stdout_queue: "queue.Queue[Tuple[int, str]]" = queue.Queue()
        # verrou pour sessions/meta manipulés depuis plusieurs threads
        self._lock = threading.Lock()

    def handle_stdout(self, pid: int, text: str) -> None:
        self.stdout_queue.put((pid, text))

    def new_session(self, name: str = "", capacities: Optional[Capacities] = None) -> int:
        with self._lock:
            pid = self._next_pid
            self._next_pid += 1
        session = Session(pid, host=self, capacities=capacities or self.capacities)
        with self._lock:
            self.sessions[pid] = session
            self.meta.setdefault(pid, {})["name"] = name or f"vm{pid}"
        session.start()
        logger.debug("session %d (%s) started", pid, name or f"vm{pid}")
        return pid

    def get(self, pid: int) -> Optional[Session]:
        with self._lock:
            return self.sessions.get(pid)

    def _require(self, pid: int) -> Session:
        session = self.get(pid)
        if session is None:
            raise KeyError(f"unknown pid {pid}")
        return session

    def kill_session(self, pid: int) -> None:
        with self._lock:
            session = self.sessions.pop(pid, None)
            self.meta.pop(pid, None)
        if session is not None:
            session.stop()
            logger.debug("session %d stopped", pid)

    def send_line(self, pid: int, line: str) -> None:
        self._require(pid).post({"type": "stdin", "line": line})

    def call_function(self, pid: int, name: str) -> None:
        self._require(pid).post({"type": "call", "name": name})

    def wait_idle(self, pid: int, timeout: Optional[float] = None) -> bool:
        return self._require(pid).wait_idle(timeout)

    def list_sessions(self) -> List[Dict[str, Any]]:
        with self._lock:
            result = [
                {"pid": pid, "name": self.meta.get(pid, {}).get("name", f"vm{pid}"), "alive": s.alive}
                for pid, s in self.sessions.items()
            ]
        result.sort(key=lambda d: d["pid"])
        return result

    def drain_stdout(self, pid: Optional[int] = None) -> str:
        """Empty stdout_queue; returns the concatenated text (of `pid` only if given)."""
        chunks: List[str] = []
        while True:
            try:
                got_pid, text = self.stdout_queue.get_nowait()
            except queue.Empty:
                break
            if pid is None or got_pid == pid:
                chunks.append(text)
        return "".join(chunks)

    def reset(self) -> None:
        with self._lock:
            pids = list(self.sessions.keys())
        for pid in pids:
            self.kill_session(pid)
        with self._lock:
            self._next_pid = 1
        self.drain_stdout()
