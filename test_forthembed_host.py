#!/usr/bin/env python3
# test_forthembed_host.py
#
# Tests de la couche host : API de liaison, Session, ForthHostCore.

from __future__ import annotations

import io
import queue
import unittest
from typing import List, Tuple

from forthembed_errors import (
    ForthError,
    MemoryOutOfBounds,
    NameResolutionError,
    NativeFunctionError,
    StackUnderflow,
)
from forthembed_host import (
    ForthHostCore,
    Session,
    compile_script,
    define_constant,
    define_native,
    make_default_state,
    make_state,
    pop,
    push,
    release,
    run,
    run_function,
)
from forthembed_state import MachineState


class TestBindingAPI(unittest.TestCase):
    def setUp(self) -> None:
        self.out = io.StringIO()
        self.state = make_default_state(out=self.out)

    def test_make_state(self):
        s = make_state(2, 10, 4, 3, 1)
        self.assertEqual(s.data.capacity, 2)
        self.assertEqual(s.memory.capacity, 10)
        self.assertEqual(s.rstack.capacity, 4)
        self.assertEqual(s.dictionary.capacity, 3)
        self.assertEqual(s.natives.capacity, 1)

    def test_run_prints(self):
        run(self.state, compile_script("1 2 + ."))
        self.assertEqual(self.out.getvalue(), "3 ")

    def test_push_pop(self):
        push(self.state, 5)
        push(self.state, 2 ** 32 + 1)
        self.assertEqual(pop(self.state), 1)
        self.assertEqual(pop(self.state), 5)
        with self.assertRaises(StackUnderflow):
            pop(self.state)
        with self.assertRaises(TypeError):
            push(self.state, True)

    def test_run_function_before_definition(self):
        prog = compile_script(": sq dup * ;")
        self.assertFalse(run_function(self.state, prog, "sq"))
        run(self.state, prog)
        push(self.state, 7)
        self.assertTrue(run_function(self.state, prog, "sq"))
        self.assertEqual(pop(self.state), 49)

    def test_run_function_on_non_function(self):
        define_constant(self.state, "answer", 42)
        self.assertFalse(run_function(self.state, None, "answer"))
        self.assertEqual(len(self.state.data), 0)

    def test_run_function_from_another_program(self):
        lib = compile_script(": hello 1 . ;")
        run(self.state, lib)
        other = compile_script("2 .")
        self.assertTrue(run_function(self.state, other, "hello"))
        self.assertEqual(self.out.getvalue(), "1 ")

    def test_define_constant(self):
        define_constant(self.state, "ten", 10)
        run(self.state, compile_script("ten ten + ."))
        self.assertEqual(self.out.getvalue(), "20 ")

    def test_define_native(self):
        def add(state: MachineState) -> None:
            b = state.pop(); a = state.pop()
            state.push(a + b)

        define_native(self.state, "add", add)
        run(self.state, compile_script("3 4 add ."))
        self.assertEqual(self.out.getvalue(), "7 ")
        push(self.state, 1); push(self.state, 2)
        self.assertTrue(run_function(self.state, None, "add"))
        self.assertEqual(pop(self.state), 3)

    def test_native_failure_is_wrapped(self):
        def boom(state: MachineState) -> None:
            raise ValueError("nope")

        define_native(self.state, "boom", boom)
        with self.assertRaises(NativeFunctionError) as cm:
            run(self.state, compile_script("boom"))
        self.assertIsInstance(cm.exception.__cause__, ValueError)

    def test_native_forth_errors_propagate(self):
        define_native(self.state, "take", lambda state: state.pop())
        with self.assertRaises(StackUnderflow):
            run(self.state, compile_script("take"))

    def test_native_table_full(self):
        s = make_state(10, 10, 10, 10, 1)
        define_native(s, "a", lambda state: None)
        with self.assertRaises(MemoryOutOfBounds):
            define_native(s, "b", lambda state: None)
        self.assertEqual(s.dictionary.names(), ["a"])

    def test_release(self):
        prog = compile_script(': f ." hi" ; f')
        run(self.state, prog)
        release(prog)
        self.assertTrue(prog.released)
        release(self.state)
        self.assertTrue(self.state.released)
        with self.assertRaises(ForthError):
            run(self.state, compile_script("1"))
        with self.assertRaises(ForthError):
            push(self.state, 1)
        with self.assertRaises(TypeError):
            release("not a state")  # type: ignore[arg-type]


class TestSession(unittest.TestCase):
    def setUp(self) -> None:
        self.session = Session()

    def dot(self, line: str) -> str:
        out = io.StringIO()
        self.session.handle_dot_command(line, out)
        return out.getvalue()

    def test_interpret_returns_output(self):
        self.assertEqual(self.session.interpret("1 2 + ."), "3 ")
        self.assertEqual(self.session.interpret(": sq dup * ;"), "")
        self.assertEqual(self.session.interpret("5 sq ."), "25 ")

    def test_interpret_propagates_errors(self):
        with self.assertRaises(NameResolutionError):
            self.session.interpret("nope")

    def test_run_function(self):
        self.session.interpret(": two 2 ;")
        self.assertTrue(self.session.run_function("two"))
        self.assertFalse(self.session.run_function("three"))
        self.assertEqual(self.session.state.data.items(), [2])

    def test_release_counts_texts(self):
        self.session.interpret(": sq dup * ;")
        self.session.interpret('3 sq . ." x"')
        self.assertEqual(self.session.release(), 3)
        self.assertTrue(self.session.state.released)

    def test_dot_stack(self):
        self.session.interpret("1 2")
        self.assertEqual(self.dot(".stack"), "<2> 1 2 \n")

    def test_dot_dict(self):
        self.session.interpret("1 constant one variable total : twice 2 * ;")
        self.assertEqual(self.dot(".dict"), "one total twice\n")
        self.assertEqual(self.dot(".dict t"), "total twice\n")

    def test_dot_see(self):
        self.session.interpret(': greet ." hi" 3 . ; 7 constant seven')
        self.assertEqual(self.dot(".see greet"), ': greet ." hi" 3 . ;\n')
        self.assertEqual(self.dot(".see seven"), "constant seven (=7)\n")
        self.assertEqual(self.dot(".see nothing"), "unknown: nothing\n")

    def test_dot_mem(self):
        self.session.interpret("variable x 5 x ! variable y")
        self.assertEqual(self.dot(".mem"), "HERE=2 5 0\n")
        self.assertEqual(self.dot(".mem 1"), "HERE=2 5\n")

    def test_unknown_dot_command(self):
        self.assertEqual(self.dot(".bogus"), "unknown dot-cmd: .bogus\n")

    def test_dot_mem_bad_count(self):
        self.session.interpret("variable x")
        for line in (".mem abc", ".mem -1"):
            with self.subTest(line=line):
                self.assertIn("usage: .mem", self.dot(line))


class TestForthHostCore(unittest.TestCase):
    def setUp(self) -> None:
        self.host = ForthHostCore()

    def tearDown(self) -> None:
        self.host.reset()

    def run_line(self, pid: int, line: str) -> str:
        self.host.send_line(pid, line)
        self.assertTrue(self.host.wait_idle(pid, 2.0))
        return self.host.drain_stdout(pid)

    def test_new_session(self):
        pid = self.host.new_session("main")
        self.assertEqual(pid, 1)
        sessions = self.host.list_sessions()
        self.assertEqual(sessions, [{"pid": 1, "name": "main", "alive": True}])
        self.assertIsNotNone(self.host.sessions[pid].thread)

    def test_default_name(self):
        pid = self.host.new_session()
        self.assertEqual(self.host.list_sessions()[0]["name"], f"vm{pid}")

    def test_handle_stdout_pushes_to_queue(self):
        self.host.handle_stdout(3, "42 ")
        self.host.handle_stdout(3, "\n")
        items: List[Tuple[int, str]] = []
        while True:
            try:
                items.append(self.host.stdout_queue.get_nowait())
            except queue.Empty:
                break
        self.assertEqual(items, [(3, "42 "), (3, "\n")])

    def test_send_line_runs_code(self):
        pid = self.host.new_session("calc")
        self.assertEqual(self.run_line(pid, "1 2 + ."), "3 ")

    def test_errors_are_reported_not_fatal(self):
        pid = self.host.new_session()
        out = self.run_line(pid, "1 foo")
        self.assertIn("error:", out)
        self.assertIn("foo", out)
        # la session reste utilisable
        self.assertEqual(self.run_line(pid, "."), "1 ")

    def test_call_function(self):
        pid = self.host.new_session()
        self.run_line(pid, ": hi 9 . ;")
        self.host.call_function(pid, "hi")
        self.host.wait_idle(pid, 2.0)
        self.assertEqual(self.host.drain_stdout(pid), "9 ")
        self.host.call_function(pid, "missing")
        self.host.wait_idle(pid, 2.0)
        self.assertIn("no function named 'missing'", self.host.drain_stdout(pid))

    def test_sessions_are_independent(self):
        a = self.host.new_session("a")
        b = self.host.new_session("b")
        self.run_line(a, "5 constant five")
        self.assertIn("error:", self.run_line(b, "five ."))
        self.assertEqual(self.run_line(a, "five ."), "5 ")

    def test_unexpected_failure_keeps_session_alive(self):
        pid = self.host.new_session()
        session = self.host.sessions[pid]
        # message sans "line" : KeyError côté worker
        session.post({"type": "stdin"})
        self.host.wait_idle(pid, 2.0)
        self.assertIn("error: KeyError", self.host.drain_stdout(pid))
        self.assertTrue(session.alive)
        self.assertTrue(session.thread.is_alive())
        self.assertEqual(self.run_line(pid, "1 2 + ."), "3 ")

    def test_cross_line_recursion_reports_overflow(self):
        pid = self.host.new_session()
        self.run_line(pid, ": a b ;")
        self.run_line(pid, ": b a ;")
        out = self.run_line(pid, "a")
        self.assertIn("error:", out)
        self.assertIn("overflow", out)
        self.assertEqual(self.run_line(pid, "1 2 + ."), "3 ")

    def test_worker_exit_marks_session_dead(self):
        pid = self.host.new_session()
        session = self.host.sessions[pid]
        session.stop()
        session.thread.join(2.0)
        self.assertFalse(session.alive)

    def test_kill_session(self):
        pid = self.host.new_session()
        self.host.kill_session(pid)
        self.assertEqual(self.host.list_sessions(), [])
        self.assertIsNone(self.host.get(pid))
        with self.assertRaises(KeyError):
            self.host.send_line(pid, "1")

    def test_reset(self):
        self.host.new_session()
        self.host.new_session()
        self.host.reset()
        self.assertEqual(self.host.list_sessions(), [])
        self.assertEqual(self.host.new_session(), 1)


if __name__ == "__main__":
    unittest.main()
