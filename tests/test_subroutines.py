# tests/test_subroutines.py
"""
Tests for subroutine table construction, region queries and the
structural constraints enforced while building.
"""

import logging

import pytest

from jsr_subroutines import (
    AssertionViolatedError,
    Instruction,
    InstructionList,
    InvalidSubroutineEntryError,
    MethodCode,
    MissingRetError,
    MultipleRetError,
    ProtectedSubroutineError,
    RecursiveSubroutineCallError,
    RetSlotMismatchError,
    SharedInstructionError,
    StructuralCodeConstraintError,
    SubroutineConfig,
    Subroutines,
    build_subroutines,
    check_subroutines,
    parse_listing,
    subroutine_summary,
)

from tests.conftest import make_method, positions


def _at(method, pos):
    return method.instructions[pos]


def _reachable(table):
    return [h for h in table.method.instructions if table.subroutine_of(h) is not None]


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

class TestNoSubroutines:
    """A method without jsr has only the top level."""

    def test_only_top_level(self, straight_line):
        table = build_subroutines(straight_line)
        assert table.subroutines == []
        assert len(table) == 1
        assert positions(table.top_level.instructions) == list(range(7))

    def test_top_level_calls_nothing(self, straight_line):
        table = build_subroutines(straight_line)
        assert table.top_level.sub_subs() == frozenset()

    def test_top_level_locals(self, straight_line):
        table = build_subroutines(straight_line)
        assert table.top_level.accessed_local_indices() == {1}
        assert table.top_level.recursively_accessed_local_indices() == {1}

    def test_top_level_has_no_local_variable(self, straight_line):
        table = build_subroutines(straight_line)
        assert table.top_level.local_variable is None
        assert table.top_level.is_top_level


class TestSingleSubroutine:
    """One jsr target gives one subroutine."""

    def test_two_regions(self, single_subroutine):
        table = build_subroutines(single_subroutine)
        assert len(table) == 2
        (sub,) = table.subroutines
        assert sub.local_variable == 3
        assert not sub.is_top_level
        assert positions(table.top_level.instructions) == [0, 1]
        assert positions(sub.instructions) == [2, 3]

    def test_accessed_slots_include_ret_slot(self, single_subroutine):
        table = build_subroutines(single_subroutine)
        (sub,) = table.subroutines
        assert 3 in sub.accessed_local_indices()

    def test_entry_exit_and_calls(self, single_subroutine):
        table = build_subroutines(single_subroutine)
        (sub,) = table.subroutines
        assert sub.entry is _at(single_subroutine, 2)
        assert sub.leaving_ret is _at(single_subroutine, 3)
        assert positions(sub.entering_jsr_instructions) == [0]
        assert table.top_level.sub_subs() == {sub}

    def test_lookup(self, single_subroutine):
        table = build_subroutines(single_subroutine)
        sub = table.get_subroutine(_at(single_subroutine, 2))
        assert table.subroutine_of(_at(single_subroutine, 3)) is sub
        assert table.subroutine_of(_at(single_subroutine, 0)) is table.top_level
        assert sub.contains(_at(single_subroutine, 3))
        assert _at(single_subroutine, 0) not in sub

    def test_two_methods_from_one_body(self):
        body = [
            Instruction("jsr", target=2),
            Instruction("return"),
            Instruction("astore_1"),
            Instruction("ret", index=1),
        ]
        first = build_subroutines(MethodCode("a", InstructionList(body)))
        second_method = MethodCode("b", InstructionList(body))
        second = build_subroutines(second_method)
        (sub,) = second.subroutines
        assert sub.entry is _at(second_method, 2)
        assert sub.leaving_ret is _at(second_method, 3)
        assert first.subroutines[0].entry is not sub.entry

    def test_jsr_w(self):
        m = parse_listing("""
                jsr_w Sub
                return
        Sub:    astore 7
                ret 7
        """)
        (sub,) = build_subroutines(m).subroutines
        assert sub.local_variable == 7


class TestSharedEntry:
    """Several jsrs to one target share a subroutine."""

    def test_two_call_sites_one_region(self):
        m = parse_listing("""
                jsr Sub
                jsr Sub
                return
        Sub:    astore 3
                iload_2
                ret 3
        """)
        table = build_subroutines(m)
        (sub,) = table.subroutines
        assert positions(sub.entering_jsr_instructions) == [0, 1]
        assert sub.leaving_ret.position == 5
        assert sub.accessed_local_indices() == {2, 3}


class TestTryFinally:
    """The classic finally shape with a catch-all handler."""

    def test_partition(self, try_finally):
        table = build_subroutines(try_finally)
        (fin,) = table.subroutines
        assert positions(table.top_level.instructions) == list(range(8))
        assert positions(fin.instructions) == [8, 9, 10]
        assert positions(fin.entering_jsr_instructions) == [2, 5]

    def test_handler_entry_seeds_top_level(self, try_finally):
        table = build_subroutines(try_finally)
        assert table.subroutine_of(_at(try_finally, 4)) is table.top_level

    def test_locals(self, try_finally):
        table = build_subroutines(try_finally)
        (fin,) = table.subroutines
        assert fin.accessed_local_indices() == {1, 3}
        assert table.top_level.accessed_local_indices() == {1, 2}
        assert table.top_level.recursively_accessed_local_indices() == {1, 2, 3}


class TestNested:
    """Subroutines calling subroutines."""

    def test_sub_subs(self, nested_table):
        x, y = nested_table.subroutines
        assert nested_table.top_level.sub_subs() == {x}
        assert x.sub_subs() == {y}
        assert y.sub_subs() == frozenset()

    def test_wide_locals(self, nested_table):
        x, y = nested_table.subroutines
        assert y.accessed_local_indices() == {2, 4, 5}
        assert x.accessed_local_indices() == {1}
        assert x.recursively_accessed_local_indices() == {1, 2, 4, 5}

    def test_recursive_superset(self, nested_table):
        for region in nested_table:
            rec = region.recursively_accessed_local_indices()
            assert rec >= region.accessed_local_indices()
            for callee in region.sub_subs():
                assert rec >= callee.recursively_accessed_local_indices()

    def test_shared_callee_diamond(self):
        m = parse_listing("""
                jsr A
                jsr B
                return
        A:      astore_1
                jsr Z
                ret 1
        B:      astore_2
                jsr Z
                ret 2
        Z:      astore_3
                istore 6
                ret 3
        """)
        table = build_subroutines(m)
        a, b, z = table.subroutines
        assert a.sub_subs() == b.sub_subs() == {z}
        assert table.top_level.recursively_accessed_local_indices() == {1, 2, 3, 6}
        assert table.nesting_depth() == 2


# ---------------------------------------------------------------------------
# Structural violations
# ---------------------------------------------------------------------------

class TestProtectedSubroutine:
    """Subroutine code must not lie in a protected range."""

    def test_handler_covering_subroutine(self):
        m = parse_listing("""
                jsr Sub
                return
        Sub:    astore_1
                ret 1
        Handler:
                astore_2
                aload_2
                athrow
        .catch all from Sub to Sub using Handler
        """)
        with pytest.raises(ProtectedSubroutineError) as exc_info:
            build_subroutines(m)
        err = exc_info.value
        assert err.instruction is _at(m, 2)
        assert err.handler is m.handlers[0]
        assert err.subroutines[0].local_variable == 1

    def test_programmatic_method(self):
        m = make_method(
            [
                Instruction("jsr", target=2),
                "return",
                Instruction("astore_1"),
                Instruction("ret", index=1),
                "athrow",
            ],
            handlers=[(2, 3, 4, "java/lang/Exception")],
        )
        with pytest.raises(ProtectedSubroutineError) as exc_info:
            build_subroutines(m)
        assert exc_info.value.instruction.position == 2

    def test_range_end_is_inclusive(self):
        m = parse_listing("""
        Start:  nop
                jsr Sub
                return
        Sub:    astore_1
                ret 1
        H:      athrow
        .catch all from Start to Sub using H
        """)
        with pytest.raises(ProtectedSubroutineError) as exc_info:
            build_subroutines(m)
        assert exc_info.value.instruction.position == 3

    def test_handler_over_top_level_is_fine(self, try_finally):
        build_subroutines(try_finally)


class TestRecursiveCall:
    """Slot reuse along a call path fails construction."""

    def test_callee_reuses_caller_slot(self):
        m = parse_listing("""
                jsr X
                return
        X:      astore_1
                jsr Y
                ret 1
        Y:      astore_1
                ret 1
        """)
        with pytest.raises(RecursiveSubroutineCallError) as exc_info:
            build_subroutines(m)
        named = sorted(s.entry.position for s in exc_info.value.subroutines)
        assert named == [2, 5]

    def test_direct_recursion(self):
        m = parse_listing("""
                jsr X
                return
        X:      astore_1
                jsr X
                ret 1
        """)
        with pytest.raises(RecursiveSubroutineCallError):
            build_subroutines(m)


class TestSharedInstruction:
    """No instruction may belong to two regions."""

    def test_fallthrough_into_subroutine(self):
        m = parse_listing("""
                jsr Sub
        Sub:    astore_1
                ret 1
        """)
        with pytest.raises(SharedInstructionError) as exc_info:
            build_subroutines(m)
        err = exc_info.value
        assert err.instruction is _at(m, 1)
        assert err.subroutines[0].is_top_level
        assert err.subroutines[1].entry is _at(m, 1)

    def test_jump_into_subroutine_body(self):
        m = parse_listing("""
                jsr Sub
                goto Body
        Sub:    astore_1
        Body:   nop
                ret 1
        """)
        with pytest.raises(SharedInstructionError) as exc_info:
            build_subroutines(m)
        assert exc_info.value.instruction.position == 3

    def test_two_subroutines_sharing_code(self):
        m = parse_listing("""
                jsr A
                jsr B
                return
        A:      astore_1
                goto Common
        B:      astore_2
        Common: ret 1
        """)
        with pytest.raises(SharedInstructionError) as exc_info:
            build_subroutines(m)
        assert exc_info.value.instruction.position == 6
        assert [s.entry.position for s in exc_info.value.subroutines] == [3, 5]


class TestRetConstraints:
    """Every subroutine has exactly one matching ret."""

    def test_missing_ret(self):
        m = parse_listing("""
                jsr Sub
                return
        Sub:    astore_1
                return
        """)
        with pytest.raises(MissingRetError) as exc_info:
            build_subroutines(m)
        assert exc_info.value.instruction is _at(m, 2)

    def test_multiple_ret(self):
        m = parse_listing("""
                jsr Sub
                return
        Sub:    astore_1
                iload_0
                ifeq Other
                ret 1
        Other:  ret 1
        """)
        with pytest.raises(MultipleRetError) as exc_info:
            build_subroutines(m)
        assert positions(exc_info.value.instructions) == [5, 6]

    def test_ret_slot_mismatch(self):
        m = parse_listing("""
                jsr Sub
                return
        Sub:    astore_1
                ret 2
        """)
        with pytest.raises(RetSlotMismatchError) as exc_info:
            build_subroutines(m)
        assert exc_info.value.instruction is _at(m, 3)


class TestInvalidEntry:
    """A jsr must target an astore other than the method entry."""

    def test_target_not_astore(self):
        m = parse_listing("""
                jsr Sub
                return
        Sub:    iconst_0
                ret 1
        """)
        with pytest.raises(InvalidSubroutineEntryError) as exc_info:
            build_subroutines(m)
        assert positions(exc_info.value.instructions) == [0, 2]

    def test_target_is_aload(self):
        m = parse_listing("""
                jsr Sub
                return
        Sub:    aload_1
                ret 1
        """)
        with pytest.raises(InvalidSubroutineEntryError):
            build_subroutines(m)

    def test_target_is_method_entry(self):
        m = parse_listing("""
        Top:    astore_1
                jsr Top
                return
        """)
        with pytest.raises(InvalidSubroutineEntryError):
            build_subroutines(m)


class TestErrorTaxonomy:
    """Structural errors and internal assertions stay apart."""

    def test_structural_errors_share_a_base(self):
        for cls in (SharedInstructionError, MissingRetError, MultipleRetError,
                    RetSlotMismatchError, ProtectedSubroutineError,
                    RecursiveSubroutineCallError, InvalidSubroutineEntryError):
            assert issubclass(cls, StructuralCodeConstraintError)

    def test_assertions_are_separate(self):
        assert issubclass(AssertionViolatedError, AssertionError)
        assert not issubclass(AssertionViolatedError, StructuralCodeConstraintError)


# ---------------------------------------------------------------------------
# Usage violations
# ---------------------------------------------------------------------------

class TestUsageViolations:
    """Programming errors raise AssertionViolatedError."""

    def test_top_level_jsrs(self, single_subroutine):
        table = build_subroutines(single_subroutine)
        with pytest.raises(AssertionViolatedError):
            table.top_level.entering_jsr_instructions

    def test_top_level_ret(self, single_subroutine):
        table = build_subroutines(single_subroutine)
        with pytest.raises(AssertionViolatedError):
            table.top_level.leaving_ret

    def test_get_subroutine_for_non_leader(self, single_subroutine):
        table = build_subroutines(single_subroutine)
        with pytest.raises(AssertionViolatedError):
            table.get_subroutine(_at(single_subroutine, 3))

    def test_get_subroutine_for_top_level(self, single_subroutine):
        table = build_subroutines(single_subroutine)
        with pytest.raises(AssertionViolatedError):
            table.get_subroutine(_at(single_subroutine, 0))

    def test_local_variable_set_twice(self, single_subroutine):
        (sub,) = build_subroutines(single_subroutine).subroutines
        with pytest.raises(AssertionViolatedError):
            sub._set_local_variable(4)

    def test_add_after_sealing(self, single_subroutine):
        (sub,) = build_subroutines(single_subroutine).subroutines
        with pytest.raises(AssertionViolatedError, match="sealed"):
            sub._add_instruction(_at(single_subroutine, 1))

    def test_add_after_ret_resolved(self, single_subroutine):
        table = build_subroutines(single_subroutine)
        table.sealed = False
        (sub,) = table.subroutines
        with pytest.raises(AssertionViolatedError, match="leaving RET"):
            sub._add_instruction(_at(single_subroutine, 1))

    def test_add_jsr_requires_jsr(self, single_subroutine):
        (sub,) = build_subroutines(single_subroutine).subroutines
        with pytest.raises(AssertionViolatedError):
            sub._add_entering_jsr(_at(single_subroutine, 1))


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------

class TestPartition:
    """Every reachable instruction belongs to exactly one region."""

    @pytest.mark.parametrize("fixture", [
        "straight_line", "single_subroutine", "try_finally", "nested",
    ])
    def test_every_reachable_instruction_in_exactly_one_region(self, fixture, request):
        method = request.getfixturevalue(fixture)
        table = build_subroutines(method)
        owners = {}
        for region in table:
            for h in region.instructions:
                assert h not in owners
                owners[h] = region
        assert set(owners) == set(_reachable(table))

    def test_dead_code(self, caplog):
        m = parse_listing("""
                return
                nop
                goto 1
        """)
        table = build_subroutines(m)
        caplog.set_level(logging.DEBUG, logger="jsr_subroutines.subroutines")
        assert table.subroutine_of(_at(m, 1)) is None
        assert "dead code" in caplog.text
        assert positions(table.dead_instructions()) == [1, 2]

    def test_dead_code_log_level(self, caplog):
        m = parse_listing("return\nnop\n")
        config = SubroutineConfig(dead_code_log_level=logging.WARNING)
        table = build_subroutines(m, config)
        caplog.set_level(logging.WARNING, logger="jsr_subroutines.subroutines")
        table.subroutine_of(_at(m, 1))
        assert any(r.levelno == logging.WARNING for r in caplog.records)

    def test_exit_uniqueness(self, try_finally):
        table = build_subroutines(try_finally)
        for sub in table.subroutines:
            rets = [h for h in sub.instructions if h.instruction.is_ret]
            assert rets == [sub.leaving_ret]
            assert sub.leaving_ret.instruction.index == sub.local_variable

    def test_handlers_disjoint_from_subroutines(self, try_finally):
        table = build_subroutines(try_finally)
        for eh in try_finally.handlers:
            for sub in table.subroutines:
                assert not any(h in sub for h in eh.covered())


class TestIdempotentQueries:
    """Region queries are pure, with or without caching."""

    @pytest.mark.parametrize("cache", [True, False])
    def test_repeated_queries_agree(self, nested, cache):
        table = Subroutines(nested, SubroutineConfig(cache_queries=cache))
        for region in table:
            assert region.accessed_local_indices() == region.accessed_local_indices()
            assert (region.recursively_accessed_local_indices()
                    == region.recursively_accessed_local_indices())
            assert region.sub_subs() == region.sub_subs()
            assert region.instructions == region.instructions


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

class TestReporting:
    """Statistics, DOT output, descriptions and summaries."""

    def test_statistics(self, nested_table):
        stats = nested_table.statistics()
        assert stats["method"] == "nested"
        assert stats["subroutines"] == 2
        assert stats["top_level_instructions"] == 2
        assert stats["instructions_per_subroutine"] == {2: 3, 5: 3}
        assert stats["dead_instructions"] == 0
        assert stats["max_nesting_depth"] == 2

    def test_to_dot(self, nested_table):
        dot = nested_table.to_dot(title="nested")
        assert dot.startswith("digraph Subroutines {")
        assert '"top-level" -> "sub@2"' in dot
        assert '"sub@2" -> "sub@5" [label="jsr 3"]' in dot
        assert 'label="nested"' in dot
        assert dot.endswith("}")

    def test_describe(self, single_subroutine):
        table = build_subroutines(single_subroutine)
        (sub,) = table.subroutines
        text = sub.describe()
        assert "local variable: 3" in text
        assert "JSRs: [0]" in text
        assert "RET: 3" in text
        assert "top-level" in table.top_level.describe()

    def test_summary(self, try_finally):
        text = subroutine_summary(build_subroutines(try_finally))
        assert "Subroutines of tryFinally" in text
        assert "sub@8: slot 3, ret @10, jsrs [2, 5]" in text

    def test_verbose_logs_info(self, single_subroutine, caplog):
        caplog.set_level(logging.INFO, logger="jsr_subroutines.subroutines")
        build_subroutines(single_subroutine, SubroutineConfig(verbose=True))
        assert "1 subroutine(s)" in caplog.text

    def test_repr(self, single_subroutine):
        table = build_subroutines(single_subroutine)
        assert repr(table) == "Subroutines('single', subroutines=1)"
        assert "local_variable=3" in repr(table.subroutines[0])


class TestCheckSubroutines:
    """check_subroutines turns rejections into diagnostics."""

    def test_success(self, single_subroutine):
        table, diagnostics = check_subroutines(single_subroutine)
        assert isinstance(table, Subroutines)
        assert diagnostics == []

    def test_rejection_becomes_diagnostic(self):
        m = parse_listing("""
                jsr Sub
                return
        Sub:    astore_1
                ret 2
        """, name="bad")
        table, diagnostics = check_subroutines(m)
        assert table is None
        (diag,) = diagnostics
        assert diag.code == "JSR-1004"
        assert diag.error_id == "subroutineRetSlotMismatch"
        assert diag.location.method == "bad"
        assert diag.location.position == 3
        assert [loc.position for loc in diag.secondary] == [2]
