#!/usr/bin/env python3
# forthembed_repl.py
#
# REPL host pour l'interpréteur embarqué :
# - utilise ForthHostCore (sessions, messages, stdout_queue)
# - toutes les commandes host commencent par:  :host ...
# - les lignes sans préfixe sont envoyées telles quelles à la session courante
#
# Commandes host:
#   :host new [name]        -> crée une session, devient courante
#   :host vm PID            -> change de session courante
#   :host ps                -> liste des sessions (pid, name, alive)
#   :host kill PID          -> tue une session
#   :host logs [PID]        -> affiche les logs de PID (ou de la session courante)
#   :host read-from FILE    -> envoie le contenu d'un fichier à la session courante
#   :host run NAME          -> exécute une fonction déjà définie
#   :host .stack / .rstack / .dict / .see / .mem
#   :host quit              -> quitte le REPL
#
# Un thread de fond vide stdout_queue pendant que PromptSession lit l'entrée.

from __future__ import annotations

import argparse
import io
import logging
import queue
import shlex
import sys
import threading
from typing import Dict, List, Optional, Sequence

from forthembed_host import DOT_CMDS, ForthHostCore, Session
from forthembed_state import DEFAULT_CAPACITIES, Capacities

logger = logging.getLogger(__name__)

HOST_CMDS = ["new", "vm", "ps", "kill", "logs", "read-from", "run", "quit", "help"]


class HostREPL:
    """
    Text REPL on top of ForthHostCore.

    - gère les sessions via :host new / vm / ps / kill / logs / quit
    - envoie les lignes Forth à la session courante via host.send_line
    - intercepte :host .stack etc. et appelle Session.handle_dot_command
    - thread de fond pour drainer stdout_queue en continu
    """

    def __init__(self, capacities: Capacities = DEFAULT_CAPACITIES) -> None:
        self.host = ForthHostCore(capacities)
        self.current_pid: int = self.host.new_session("main")

        # logs bruts par pid (tout ce qui sort via host.handle_stdout)
        self._logs: Dict[int, List[str]] = {}

        self._stop_event: Optional[threading.Event] = None
        self._stdout_thread: Optional[threading.Thread] = None
        self._print_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Utilitaires internes
    # ------------------------------------------------------------------

    def _get_session(self, pid: int) -> Optional[Session]:
        return self.host.get(pid)

    def _drain_stdout(self, *, block: bool = False, timeout: float = 0.1) -> None:
        """
        Empty the host's stdout_queue into the logs, printing the current session's text.
        block=True waits up to `timeout` for the first item.
        """
        q = self.host.stdout_queue
        first = True
        while True:
            try:
                if first and block:
                    pid, text = q.get(timeout=timeout)
                else:
                    pid, text = q.get_nowait()
            except queue.Empty:
                return
            first = False
            self._handle_stdout_item(pid, text)

    def _handle_stdout_item(self, pid: int, text: str) -> None:
        self._logs.setdefault(pid, []).append(text)
        # n'affiche à l'écran QUE la session courante
        if pid != self.current_pid:
            return
        with self._print_lock:
            sys.stdout.write(text)
            sys.stdout.flush()

    def _stdout_worker(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            self._drain_stdout(block=True, timeout=0.1)

    def _print_ps(self) -> None:
        sessions = self.host.list_sessions()
        if not sessions:
            print("(no sessions)")
            return
        print(" PID   ALIVE  NAME")
        print(" ----  -----  ----------------")
        for info in sessions:
            pid = info["pid"]
            alive = "yes" if info["alive"] else "no"
            cur_mark = "*" if pid == self.current_pid else " "
            print(f"{cur_mark}{pid:4d}  {alive:5s}  {info['name']}")

    def _print_logs(self, pid: int) -> None:
        buf = self._logs.get(pid)
        if not buf:
            print(f"(no logs for pid {pid})")
            return
        print(f"--- logs for pid {pid} ---")
        sys.stdout.write("".join(buf))
        if not buf[-1].endswith("\n"):
            sys.stdout.write("\n")
        print(f"--- end logs for pid {pid} ---")

    def _live_session(self) -> Optional[Session]:
        session = self._get_session(self.current_pid)
        if session is None:
            print("no current session; use :host new or :host vm.")
            return None
        if not session.alive:
            print(f"session {self.current_pid} is dead; use :host new or :host vm to select a live one.")
            return None
        return session

    def _send_line_to_current(self, line: str) -> None:
        if self._live_session() is None:
            return
        self.host.send_line(self.current_pid, line)

    # ------------------------------------------------------------------
    # Commandes :host ...
    # ------------------------------------------------------------------

    def _handle_host_command(self, line: str) -> bool:
        """
        Handle a line starting with ':host'. Returns True when it was handled.
        Raises SystemExit for ':host quit'.
        """
        rest = line.strip()[len(":host"):].strip()
        if not rest:
            self._print_help()
            return True
        try:
            parts = shlex.split(rest)
        except ValueError as e:
            print(f"parse error in :host command: {e}")
            return True

        cmd, args = parts[0], parts[1:]

        # dot-commands : lecture de l'état une fois la session au repos
        if cmd in DOT_CMDS or cmd.startswith("."):
            session = self._live_session()
            if session is None:
                return True
            session.wait_idle(1.0)
            out = io.StringIO()
            session.handle_dot_command(rest, out)
            sys.stdout.write(out.getvalue())
            sys.stdout.flush()
            return True

        if cmd == "read-from":
            if not args:
                print("usage: :host read-from FILE")
                return True
            self._read_from(args[0])
            return True

        if cmd == "run":
            if not args:
                print("usage: :host run NAME")
                return True
            if self._live_session() is not None:
                self.host.call_function(self.current_pid, args[0])
            return True

        if cmd == "new":
            name = args[0] if args else ""
            pid = self.host.new_session(name)
            self.current_pid = pid
            print(f"NEW pid={pid} name={name or f'vm{pid}'!r}")
            return True

        if cmd == "vm":
            if not args:
                print(f"current session pid={self.current_pid}")
                return True
            try:
                pid = int(args[0])
            except ValueError:
                print("usage: :host vm PID")
                return True
            if self._get_session(pid) is None:
                print(f"no such session pid={pid}")
                return True
            self.current_pid = pid
            print(f"switched to pid={pid}")
            return True

        if cmd == "ps":
            self._print_ps()
            return True

        if cmd == "kill":
            try:
                pid = int(args[0])
            except (IndexError, ValueError):
                print("usage: :host kill PID")
                return True
            self.host.kill_session(pid)
            if pid == self.current_pid:
                remaining = self.host.list_sessions()
                if remaining:
                    self.current_pid = remaining[0]["pid"]
                    print(f"killed pid={pid}, switched to pid={self.current_pid}")
                else:
                    print(f"killed pid={pid}, no sessions left")
            else:
                print(f"killed pid={pid}")
            return True

        if cmd == "logs":
            if args:
                try:
                    pid = int(args[0])
                except ValueError:
                    print("usage: :host logs [PID]")
                    return True
            else:
                pid = self.current_pid
            self._print_logs(pid)
            return True

        if cmd in ("quit", "exit"):
            if self._stop_event is not None:
                self._stop_event.set()
            self.host.reset()
            print("bye.")
            raise SystemExit(0)

        if cmd in ("help", "?"):
            self._print_help()
            return True

        print(f"unknown host command: {cmd!r}")
        self._print_help()
        return True

    def _read_from(self, filename: str) -> None:
        """Send a whole script file as one program, so definitions may span lines."""
        try:
            with open(filename, "r", encoding="utf-8") as f:
                source = f.read()
        except OSError as e:
            print(f"read-from: cannot open {filename!r}: {e}")
            return
        logger.debug("read-from %s: %d chars", filename, len(source))
        self._send_line_to_current(source)

    def _print_help(self) -> None:
        print("Host commands (prefix with :host):")
        print("  :host new [name]           - create a session")
        print("  :host vm PID               - switch current session")
        print("  :host ps                   - list sessions")
        print("  :host kill PID             - kill session")
        print("  :host logs [PID]           - show logs for PID (or current)")
        print("  :host read-from FILE       - run a script file in the current session")
        print("  :host run NAME             - run a defined function")
        print("  :host .stack/.dict/...     - dot-command on current session")
        print("  :host quit                 - exit REPL")

    # ------------------------------------------------------------------
    # Boucle principale (PromptSession + patch_stdout)
    # ------------------------------------------------------------------

    def run(self) -> None:
        from prompt_toolkit import PromptSession
        from prompt_toolkit.completion import Completer, Completion, PathCompleter
        from prompt_toolkit.patch_stdout import patch_stdout

        print("forthembed host REPL")
        print("Type Forth code to send it to the current session.")
        print("Use :host ... for host / dot-commands.  (:host help for help)")

        self._stop_event = threading.Event()
        self._stdout_thread = threading.Thread(target=self._stdout_worker, daemon=True)
        self._stdout_thread.start()

        outer = self
        dot_cmds = sorted(DOT_CMDS)
        path_completer = PathCompleter(expanduser=True)

        class ForthCompleter(Completer):
            def get_completions(self, document, complete_event):
                stripped = document.text_before_cursor.lstrip()

                if stripped.startswith(":host"):
                    after = stripped[len(":host"):].lstrip()
                    parts = after.split()
                    if not parts or (len(parts) == 1 and not after.endswith(" ")):
                        frag = parts[0] if parts else ""
                        for name in HOST_CMDS + dot_cmds:
                            if name.startswith(frag):
                                yield Completion(name, start_position=-len(frag))
                        return
                    if parts[0] == "read-from":
                        yield from path_completer.get_completions(document, complete_event)
                    return

                # mots du dictionnaire + vocabulaire de la session courante
                session = outer._get_session(outer.current_pid)
                if session is None:
                    return
                prefix = document.get_word_before_cursor(WORD=True)
                if not prefix:
                    return
                seen = set()
                for name in session.state.dictionary.names():
                    if name not in seen and name.startswith(prefix):
                        seen.add(name)
                        yield Completion(name, start_position=-len(prefix))

        session = PromptSession(completer=ForthCompleter())

        try:
            with patch_stdout():
                while True:
                    try:
                        line = session.prompt(f"[pid={self.current_pid}] forth> ")
                    except EOFError:
                        print("\nEOF -> quitting.")
                        break
                    except KeyboardInterrupt:
                        print("\nKeyboardInterrupt (Ctrl-C). Use ':host quit' to exit.")
                        continue

                    if not line.strip():
                        continue
                    if line.strip().startswith(":host"):
                        try:
                            self._handle_host_command(line)
                        except SystemExit:
                            return
                        continue
                    self._send_line_to_current(line)
        finally:
            self._stop_event.set()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    d = DEFAULT_CAPACITIES
    p = argparse.ArgumentParser(prog="forthembed", description="Embeddable Forth-like interpreter REPL")
    p.add_argument("--data", type=int, default=d.data, help="data stack capacity")
    p.add_argument("--memory", type=int, default=d.memory, help="memory cells")
    p.add_argument("--rstack", type=int, default=d.rstack, help="return stack capacity")
    p.add_argument("--dict", type=int, default=d.dictionary, dest="dictionary", help="dictionary capacity")
    p.add_argument("--natives", type=int, default=d.natives, help="native function capacity")
    p.add_argument("--script", help="script file to run in the main session before the prompt")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return p.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")
    caps = Capacities(args.data, args.memory, args.rstack, args.dictionary, args.natives)
    repl = HostREPL(caps)
    if args.script:
        repl._read_from(args.script)
    repl.run()


if __name__ == "__main__":
    main()
