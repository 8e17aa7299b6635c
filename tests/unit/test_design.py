"""
Tests for design construction and nesting assignment.
"""

import numpy as np
import pytest

from lmmpower.core.design import (
    ITEM,
    PARTICIPANT,
    DesignSpec,
    GroupingFactor,
    NestingSpec,
    assign_nesting_group,
    build_design,
)
from lmmpower.errors import DomainError
from lmmpower.stats.random_source import RandomSource
from tests.config import SEED


class TestGroupingFactor:
    def test_default_labels(self):
        assert GroupingFactor("genre").levels == ("genre1", "genre2")

    def test_explicit_labels(self):
        f = GroupingFactor("genre", ("fiction", "news"))
        assert f.codes == {"fiction": -0.5, "news": 0.5}
        assert f.code_column == "genre_code"

    @pytest.mark.parametrize("levels", [1, 3, ("a", "b", "c")])
    def test_only_two_levels(self, levels):
        with pytest.raises(DomainError, match="two-level"):
            GroupingFactor("genre", levels)

    def test_zero_levels_rejected(self):
        with pytest.raises(DomainError):
            GroupingFactor("genre", 0)

    def test_duplicate_labels_rejected(self):
        with pytest.raises(DomainError, match="unique"):
            GroupingFactor("genre", ("a", "a"))

    @pytest.mark.parametrize("name", ["participant_id", "response", "x_code", "a:b", ""])
    def test_reserved_names_rejected(self, name):
        with pytest.raises(DomainError):
            GroupingFactor(name)


class TestBuildDesign:
    def test_row_count(self):
        design = build_design(10, [("genre", 2)], items_per_group=5)
        assert design.n_rows == 10 * 2 * 5

    def test_each_participant_level_pair_has_items_rows(self):
        design = build_design(7, [("genre", 2)], items_per_group=4)
        counts = design.table.groupby([PARTICIPANT, "genre"], observed=True).size()
        assert len(counts) == 7 * 2
        assert (counts == 4).all()

    def test_participant_major_order(self):
        design = build_design(3, [("genre", 2)], items_per_group=2)
        assert design.table[PARTICIPANT].tolist() == [1, 1, 1, 1, 2, 2, 2, 2, 3, 3, 3, 3]
        assert design.table["genre"].astype(str).tolist()[:4] == ["genre1", "genre1", "genre2", "genre2"]

    def test_deviation_codes(self):
        design = build_design(2, [("genre", 2)])
        codes = design.table.groupby("genre", observed=True)["genre_code"].unique()
        assert codes["genre1"].tolist() == [-0.5]
        assert codes["genre2"].tolist() == [0.5]

    def test_items_namespaced_by_level(self):
        design = build_design(2, [("genre", 2)], items_per_group=3)
        assert design.table[ITEM].nunique() == 6
        assert "genre1:1" in set(design.table[ITEM])

    def test_shared_items(self):
        design = build_design(2, [("genre", 2)], items_per_group=3, shared_items=True)
        assert sorted(design.table[ITEM].unique()) == ["1", "2", "3"]

    def test_between_factor_balanced_blocks(self):
        design = build_design(100, [GroupingFactor("condition", between=True)])
        assert design.n_rows == 100
        per_participant = design.table.groupby(PARTICIPANT)["condition"].nunique()
        assert (per_participant == 1).all()
        assert design.table["condition"].value_counts().tolist() == [50, 50]

    def test_between_and_within(self):
        design = build_design(10, [GroupingFactor("group", between=True), ("genre", 2)], items_per_group=2)
        assert design.n_rows == 10 * 2 * 2
        assert (design.table.groupby(PARTICIPANT)["group"].nunique() == 1).all()

    def test_no_factors(self):
        design = build_design(5, items_per_group=3)
        assert design.n_rows == 15
        assert design.table[ITEM].nunique() == 3

    def test_interaction_predictor(self):
        design = build_design(2, [("genre", 2), ("color", 2)])
        values = design.predictor_values("genre:color")
        assert np.allclose(values, design.table["genre_code"] * design.table["color_code"])
        assert set(np.unique(values)) == {-0.25, 0.25}

    def test_unknown_predictor(self):
        with pytest.raises(DomainError, match="Unknown predictor"):
            build_design(2, [("genre", 2)]).predictor_values("color")

    @pytest.mark.parametrize("participants", [0, -3])
    def test_non_positive_participants(self, participants):
        with pytest.raises(DomainError):
            build_design(participants, [("genre", 2)])

    def test_zero_items_rejected(self):
        with pytest.raises(DomainError):
            build_design(3, [("genre", 2)], items_per_group=0)

    def test_too_few_participants_for_between_cells(self):
        with pytest.raises(DomainError, match="between-participant"):
            build_design(1, [GroupingFactor("condition", between=True)])

    def test_duplicate_factor_names(self):
        with pytest.raises(DomainError, match="Duplicate"):
            build_design(3, [("genre", 2), ("genre", 2)])

    def test_with_response_does_not_mutate(self):
        design = build_design(2, [("genre", 2)])
        filled = design.with_response(np.zeros(design.n_rows))
        assert filled.has_response
        assert not design.has_response


class TestNesting:
    def test_one_group_per_participant(self, source):
        design = assign_nesting_group(build_design(30, [("genre", 2)], 2), ["DE", "PL", "US"], [0.2, 0.3, 0.5], source)
        assert design.nesting_column == "group_id"
        assert (design.table.groupby(PARTICIPANT)["group_id"].nunique() == 1).all()
        assert set(design.table["group_id"]) <= {"DE", "PL", "US"}

    def test_same_seed_same_assignment(self):
        base = build_design(30)
        a = assign_nesting_group(base, ["A", "B"], [0.5, 0.5], RandomSource(SEED))
        b = assign_nesting_group(base, ["A", "B"], [0.5, 0.5], RandomSource(SEED))
        assert a.table["group_id"].tolist() == b.table["group_id"].tolist()

    def test_probabilities_must_sum_to_one(self, source):
        with pytest.raises(DomainError, match="sum to 1"):
            assign_nesting_group(build_design(5), ["A", "B"], [0.5, 0.4], source)

    def test_probability_count_must_match(self, source):
        with pytest.raises(DomainError):
            assign_nesting_group(build_design(5), ["A", "B"], [1.0], source)

    def test_existing_column_rejected(self, source):
        with pytest.raises(DomainError, match="already exists"):
            assign_nesting_group(build_design(5), ["A"], [1.0], source, column=PARTICIPANT)


class TestDesignSpec:
    def test_build(self):
        spec = DesignSpec(participants=40, factors=(("genre", 2),), items_per_group=10)
        assert spec.build().n_rows == 800

    def test_build_with_nesting(self, source):
        spec = DesignSpec(participants=12, nesting=NestingSpec(("A", "B"), (0.5, 0.5), column="country"))
        design = spec.build(source)
        assert design.nesting_column == "country"
        assert "country" in design.table.columns

    def test_with_participants(self):
        spec = DesignSpec(participants=10, factors=(("genre", 2),))
        assert spec.with_participants(20).participants == 20
        assert spec.participants == 10

    def test_invalid_participants(self):
        with pytest.raises(DomainError):
            DesignSpec(participants=0)

    def test_nesting_spec_validated(self):
        with pytest.raises(DomainError):
            NestingSpec(("A", "B"), (0.7, 0.7))
