"""Reference backend tests: execution, printing and fault reporting.

Tests cover:
1. Arithmetic, memory and control flow on hand-written Low-level IR
2. Heap faults surfacing as BackendFailure
3. Interpreter limits and malformed modules
"""

import numpy as np
import pytest

from tensorc.errors import BackendFailure, ErrorKind
from tensorc.lowlevel import ir as ll
from tensorc.runtime import Engine, execute, format_tensor


def ptr(name: str) -> ll.Reg:
    return ll.Reg(name, "ptr")


def f64(name: str) -> ll.Reg:
    return ll.Reg(name, "f64")


def module(*blocks: ll.Block, params=(), param_shapes=(), result_shapes=()) -> ll.LowLevelModule:
    m = ll.LowLevelModule()
    m.add(
        ll.LowLevelFunction(
            "main",
            params=list(params),
            param_shapes=list(param_shapes),
            result_shapes=list(result_shapes),
            blocks=list(blocks),
        )
    )
    return m


def alloc(reg: ll.Reg, nbytes: int) -> ll.Call:
    return ll.Call(ll.RT_ALLOC, [ll.Imm(nbytes)], [reg])


def free(reg: ll.Reg) -> ll.Call:
    return ll.Call(ll.RT_FREE, [reg])


# =============================================================================
# 1. Execution
# =============================================================================


class TestExecution:
    def test_store_print_and_return(self):
        buf, a0, a1 = ptr("buf"), ptr("a0"), ptr("a1")
        x, y, z = f64("x"), f64("y"), f64("z")
        entry = ll.Block(
            "entry",
            [
                alloc(buf, 16),
                ll.Const(x, 1.5),
                ll.Const(y, 4.0),
                ll.BinOp(z, "fmul", x, y),
                ll.PtrAdd(a0, buf, ll.Imm(0)),
                ll.Store(x, a0),
                ll.PtrAdd(a1, buf, ll.Imm(8)),
                ll.Store(z, a1),
                ll.Call(ll.RT_PRINT, [buf], shape=(2,)),
            ],
            ll.Ret([buf]),
        )
        result = Engine().execute(module(entry, result_shapes=[(2,)]))

        np.testing.assert_array_equal(result.results[0], [1.5, 6.0])
        assert result.output == [format_tensor(np.array([1.5, 6.0]))]
        assert result.stats.stores == 2
        assert result.stats.allocations == result.stats.frees == 1

    def test_counted_loop(self):
        """Sum 0..4 into a one-element buffer through a phi counter."""
        buf, addr = ptr("buf"), ptr("addr")
        i, nxt, cond = ll.Reg("i", "i64"), ll.Reg("i.next", "i64"), ll.Reg("c", "i1")
        acc, fi, old, new = f64("acc"), f64("fi"), f64("old"), f64("new")
        phi = ll.Phi(i, [(ll.Imm(0), "entry")])
        blocks = [
            ll.Block(
                "entry",
                [alloc(buf, 8), ll.Const(acc, 0.0), ll.PtrAdd(addr, buf, ll.Imm(0)), ll.Store(acc, addr)],
                ll.Br("header"),
            ),
            ll.Block("header", [phi, ll.ICmp(cond, "slt", i, ll.Imm(5))], ll.CondBr(cond, "body", "exit")),
            ll.Block(
                "body",
                [
                    ll.Load(old, addr),
                    ll.BinOp(fi, "fadd", i, ll.Imm(0.0, "f64")),
                    ll.BinOp(new, "fadd", old, fi),
                    ll.Store(new, addr),
                    ll.BinOp(nxt, "add", i, ll.Imm(1)),
                ],
                ll.Br("header"),
            ),
            ll.Block("exit", [], ll.Ret([buf])),
        ]
        phi.incoming.append((nxt, "body"))
        m = module(*blocks, result_shapes=[(1,)])
        m.verify()

        result = execute(m)
        np.testing.assert_array_equal(result.results[0], [10.0])
        assert result.stats.loads == 5

    def test_arguments_are_copied_in_and_released(self):
        p = ptr("p")
        v = f64("v")
        entry = ll.Block("entry", [ll.Load(v, p), ll.Call(ll.RT_PRINT, [p], shape=(2, 2))], ll.Ret())
        m = module(entry, params=[p], param_shapes=[(2, 2)])

        result = Engine().execute(m, "main", [np.eye(2)])
        assert result.output == [format_tensor(np.eye(2))]
        assert result.stats.allocations == 1
        assert result.stats.frees == 1

    def test_peak_bytes_reported(self):
        a, b = ptr("a"), ptr("b")
        entry = ll.Block("entry", [alloc(a, 8), alloc(b, 100), free(a), free(b)], ll.Ret())
        result = Engine(alignment=64).execute(module(entry))
        assert result.stats.peak_bytes == 64 + 128


# =============================================================================
# 2. Heap Faults
# =============================================================================


class TestHeapFaults:
    def test_double_free(self):
        a = ptr("a")
        entry = ll.Block("entry", [alloc(a, 8), free(a), free(a)], ll.Ret())
        with pytest.raises(BackendFailure, match="already freed") as info:
            Engine().execute(module(entry))
        assert info.value.kind is ErrorKind.BACKEND_FAILURE

    def test_leak_is_reported(self):
        a = ptr("a")
        entry = ll.Block("entry", [alloc(a, 8)], ll.Ret())
        with pytest.raises(BackendFailure, match=r"1 buffer\(s\) leaked at exit: %a"):
            Engine().execute(module(entry))

    def test_out_of_bounds_load(self):
        a, past = ptr("a"), ptr("past")
        v = f64("v")
        entry = ll.Block(
            "entry",
            [alloc(a, 8), ll.PtrAdd(past, a, ll.Imm(8)), ll.Load(v, past), free(a)],
            ll.Ret(),
        )
        with pytest.raises(BackendFailure, match="outside every live allocation"):
            Engine().execute(module(entry))

    def test_out_of_memory(self):
        a = ptr("a")
        entry = ll.Block("entry", [alloc(a, 4096), free(a)], ll.Ret())
        with pytest.raises(BackendFailure, match="heap out of memory"):
            Engine(heap_bytes=1024).execute(module(entry))


# =============================================================================
# 3. Limits And Malformed Modules
# =============================================================================


class TestLimits:
    def test_step_limit(self):
        spin = ll.Block("entry", [], ll.Br("entry"))
        with pytest.raises(BackendFailure, match="step limit of 100 exceeded"):
            Engine(max_steps=100).execute(module(spin))

    def test_unknown_entry(self):
        entry = ll.Block("entry", [], ll.Ret())
        with pytest.raises(BackendFailure, match="unknown function @start"):
            Engine().execute(module(entry), "start")

    def test_unknown_callee(self):
        entry = ll.Block("entry", [ll.Call("missing", [])], ll.Ret())
        with pytest.raises(BackendFailure, match="unknown function @missing"):
            Engine().execute(module(entry))

    def test_argument_count(self):
        entry = ll.Block("entry", [], ll.Ret())
        with pytest.raises(BackendFailure, match="takes 0 argument"):
            Engine().execute(module(entry), "main", [np.zeros(2)])

    def test_argument_shape(self):
        p = ptr("p")
        entry = ll.Block("entry", [], ll.Ret())
        m = module(entry, params=[p], param_shapes=[(2, 2)])
        with pytest.raises(BackendFailure, match="has shape"):
            Engine().execute(m, "main", [np.zeros(3)])

    def test_phi_without_matching_edge(self):
        i = ll.Reg("i", "i64")
        blocks = [
            ll.Block("entry", [], ll.Br("next")),
            ll.Block("next", [ll.Phi(i, [(ll.Imm(0), "elsewhere")])], ll.Ret()),
        ]
        with pytest.raises(BackendFailure, match="no edge from 'entry'"):
            Engine().execute(module(*blocks))

    def test_unknown_operator(self):
        r = ll.Reg("r", "i64")
        entry = ll.Block("entry", [ll.BinOp(r, "div", ll.Imm(1), ll.Imm(2))], ll.Ret())
        with pytest.raises(BackendFailure, match="unknown binary operator"):
            Engine().execute(module(entry))
