from __future__ import annotations

from dataclasses import replace

from lodpatch.rules import Checkpoint, PatchRuleSet, Sentinel, SuppressCallRule, ToleranceRule, default_rule_set
from lodpatch.rules.catalog import ASSERTION_FORMS
from lodpatch.tools.engine import PatchEngine
from lodpatch.tools.verifier import PatchVerifier, verify_tree


def test_fully_patched_tree_passes(sfcgal_tree) -> None:
    rule_set = default_rule_set()
    results = PatchEngine().apply(sfcgal_tree.root, rule_set)

    verdict = PatchVerifier().verify(sfcgal_tree.root, rule_set, results)

    assert verdict.passed, verdict.format_summary()
    assert verdict.failures == ()
    assert verdict.missing_expected_markers == ()
    assert verdict.tree_root == sfcgal_tree.root.resolve()
    # Optional rules that did not apply are reported, not fatal.
    noticed = {finding.rule_id for finding in verdict.notices}
    assert {"tolerance-issimple", "selfint-polyhedral-2d", "selfint-ring-2d"} <= noticed


def test_unpatched_tree_enumerates_every_violation(sfcgal_tree) -> None:
    verdict = verify_tree(sfcgal_tree.root, default_rule_set())

    assert not verdict.passed
    failed_rules = {finding.rule_id for finding in verdict.failures if finding.check == "positive"}
    assert {"tolerance-isvalid", "assert-validity", "selfint-polyhedral-3d", "selfint-triangulated-3d"} <= failed_rules
    assert set(verdict.missing_expected_markers) == {
        "src/triangulate/triangulatePolygon.cpp",
        "src/algorithm/volume.cpp",
        "src/algorithm/area.cpp",
        "src/algorithm/distance3d.cpp",
        "src/algorithm/intersects.cpp",
    }
    blocking = [finding for finding in verdict.failures if finding.check == "negative"]
    assert {finding.path for finding in blocking} == {"src/algorithm/isValid.cpp"}
    assert "Verification FAILED" in verdict.format_summary()


def test_suppressed_assertions_are_re_verifiable_as_fully_patched(sfcgal_tree) -> None:
    target = "src/triangulate/triangulatePolygon.cpp"
    sfcgal_tree.write(
        target,
        """
        void f(const Geometry &g)
        {
          SFCGAL_ASSERT_GEOMETRY_VALIDITY(g);
          SFCGAL_ASSERT_GEOMETRY_VALIDITY_2D(g);
          SFCGAL_ASSERT_GEOMETRY_VALIDITY_3D(g);
          SFCGAL_ASSERT_GEOMETRY_VALIDITY_ON_PLANE(g);
        }
        """,
    )
    rule_set = PatchRuleSet(
        rules=tuple(
            SuppressCallRule(id=rule_id, scope=(target,), matcher=name) for rule_id, name in ASSERTION_FORMS.items()
        ),
        must_fully_patch=(target,),
        checkpoints=(Checkpoint(path=target, min_count=4),),
    )

    results = PatchEngine().apply(sfcgal_tree.root, rule_set)
    verdict = PatchVerifier().verify(sfcgal_tree.root, rule_set, results)

    text = sfcgal_tree.read(target)
    assert "SFCGAL_ASSERT" not in text
    assert text.count("PATCHED") == 4
    assert verdict.passed, verdict.format_summary()
    assert verdict.unpatched_occurrences == {}


def test_residuals_outside_must_fully_patch_files_are_informational(sfcgal_tree) -> None:
    sfcgal_tree.write("src/algorithm/isValid.h", "const double EPSILON = 1e-9;\nbool tiny = check(1e-9) && 1e-9;\n")
    rule_set = PatchRuleSet(
        rules=(
            ToleranceRule(
                id="tolerance-isvalid",
                scope="src/algorithm/isValid.h",
                matcher="1e-9",
                replacement="1e-2",
                policy="first-only",
            ),
        ),
    )

    results = PatchEngine().apply(sfcgal_tree.root, rule_set)
    verdict = PatchVerifier().verify(sfcgal_tree.root, rule_set, results)

    assert verdict.passed
    residuals = verdict.unpatched_occurrences["tolerance-isvalid"]
    assert [occurrence.line for occurrence in residuals] == [2, 2]
    assert not any(occurrence.blocking for occurrence in residuals)
    assert all(finding.check == "negative" for finding in verdict.notices)


def test_residual_in_must_fully_patch_file_blocks(sfcgal_tree) -> None:
    target = "src/algorithm/isValid.cpp"
    sfcgal_tree.write(target, "bool ok = SFCGAL_ASSERT_GEOMETRY_VALIDITY(g) && true;\nSFCGAL_ASSERT_GEOMETRY_VALIDITY(h);\n")
    rule_set = PatchRuleSet(
        rules=(SuppressCallRule(id="assert-validity", scope=target, matcher="SFCGAL_ASSERT_GEOMETRY_VALIDITY"),),
        must_fully_patch=(target,),
    )

    results = PatchEngine().apply(sfcgal_tree.root, rule_set)
    verdict = PatchVerifier().verify(sfcgal_tree.root, rule_set, results)

    assert not verdict.passed
    (finding,) = verdict.failures
    assert finding.check == "negative"
    assert finding.path == target
    assert finding.line == 1
    assert "SFCGAL_ASSERT_GEOMETRY_VALIDITY(g)" in finding.render()


def test_sentinel_catches_assertion_forms_without_a_rule(sfcgal_tree) -> None:
    sfcgal_tree.write("src/algorithm/isValid.cpp", "SFCGAL_ASSERT_GEOMETRY_VALIDITY_XY(g);\n")
    rule_set = PatchRuleSet(
        rules=(
            ToleranceRule(id="tolerance-isvalid", scope="src/algorithm/isValid.h", matcher="1e-9", replacement="1e-2"),
        ),
        must_fully_patch=("src/algorithm/isValid.cpp",),
        sentinels=(
            Sentinel(
                id="assert-validity-any",
                pattern=r"(?<![\w.])SFCGAL_ASSERT_GEOMETRY_VALIDITY\w*\s*\(",
                scope="src/**/*.cpp",
            ),
        ),
    )

    results = PatchEngine().apply(sfcgal_tree.root, rule_set)
    verdict = PatchVerifier().verify(sfcgal_tree.root, rule_set, results)

    assert not verdict.passed
    blocking = [finding for finding in verdict.failures if finding.rule_id == "assert-validity-any"]
    assert [finding.path for finding in blocking] == ["src/algorithm/isValid.cpp"]
    # Residuals in other files are still listed for the operator.
    assert "src/algorithm/volume.cpp" in {
        occurrence.path for occurrence in verdict.unpatched_occurrences["assert-validity-any"]
    }


def test_missing_markers_for_recorded_replacements_fail(sfcgal_tree) -> None:
    rule_set = PatchRuleSet(
        rules=(
            ToleranceRule(id="tolerance-isvalid", scope="src/algorithm/isValid.h", matcher="1e-9", replacement="1e-2"),
        ),
    )
    (result,) = PatchEngine().apply(sfcgal_tree.root, rule_set)
    sfcgal_tree.write("src/algorithm/isValid.h", "const double EPSILON = 1e-2 /* PATCHED(tolerance-isvalid) */;\n")

    verdict = PatchVerifier().verify(sfcgal_tree.root, rule_set, [result])

    assert not verdict.passed
    (finding,) = verdict.failures
    assert finding.path == "src/algorithm/isValid.h"
    assert "expected at least 3 marker(s), found 1" in finding.message


def test_missing_result_and_foreign_result(sfcgal_tree) -> None:
    rule_set = PatchRuleSet(
        rules=(
            ToleranceRule(id="tolerance-isvalid", scope="src/algorithm/isValid.h", matcher="1e-9", replacement="1e-2"),
        ),
    )
    (result,) = PatchEngine().apply(sfcgal_tree.root, rule_set)
    foreign = replace(result, rule_id="somebody-else")

    verdict = PatchVerifier().verify(sfcgal_tree.root, rule_set, [foreign])

    assert not verdict.passed
    assert [finding.message for finding in verdict.failures] == ["no application result recorded for rule"]
    assert [finding.rule_id for finding in verdict.notices] == ["somebody-else"]


def test_checkpoint_for_missing_file_is_reported(sfcgal_tree) -> None:
    rule_set = PatchRuleSet(
        rules=(
            ToleranceRule(id="tolerance-isvalid", scope="src/algorithm/isValid.h", matcher="1e-9", replacement="1e-2"),
        ),
        checkpoints=(Checkpoint(path="src/algorithm/gone.cpp"),),
    )
    results = PatchEngine().apply(sfcgal_tree.root, rule_set)

    verdict = PatchVerifier().verify(sfcgal_tree.root, rule_set, results)

    assert verdict.missing_expected_markers == ("src/algorithm/gone.cpp",)
    assert verdict.failures[0].check == "checkpoint"
    assert verdict.to_dict()["passed"] is False


def test_unpatched_tree_with_relaxed_value_elsewhere_fails(sfcgal_tree) -> None:
    sfcgal_tree.write("src/algorithm/isValid.h", "const double COARSE = 1e-2;\nconst double EPSILON = 1e-9;\n")
    rule_set = PatchRuleSet(
        rules=(
            ToleranceRule(id="tolerance-isvalid", scope="src/algorithm/isValid.h", matcher="1e-9", replacement="1e-2"),
        ),
    )

    verdict = verify_tree(sfcgal_tree.root, rule_set)

    assert not verdict.passed
    (finding,) = verdict.failures
    assert finding.check == "positive"
    assert finding.rule_id == "tolerance-isvalid"


def test_commented_calls_do_not_block_must_fully_patch_files(sfcgal_tree) -> None:
    target = "src/algorithm/isValid.cpp"
    sfcgal_tree.write(
        target,
        """
        // SFCGAL_ASSERT_GEOMETRY_VALIDITY( is too strict here
        /* SFCGAL_ASSERT_GEOMETRY_VALIDITY_3D(g); */
        SFCGAL_ASSERT_GEOMETRY_VALIDITY(g);
        """,
    )
    rule_set = PatchRuleSet(
        rules=(SuppressCallRule(id="assert-validity", scope=target, matcher="SFCGAL_ASSERT_GEOMETRY_VALIDITY"),),
        must_fully_patch=(target,),
        sentinels=(
            Sentinel(
                id="assert-validity-any",
                pattern=r"(?<![\w.])SFCGAL_ASSERT_GEOMETRY_VALIDITY\w*\s*\(",
                scope=target,
            ),
        ),
    )

    results = PatchEngine().apply(sfcgal_tree.root, rule_set)
    verdict = PatchVerifier().verify(sfcgal_tree.root, rule_set, results)

    assert verdict.passed, verdict.format_summary()
    assert verdict.unpatched_occurrences == {}
