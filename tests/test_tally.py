import pytest

from cogs.Legislature.models import Formula, ProposalStatus
from cogs.Legislature.tally import classify_regular, evaluate_quantitative, leading_candidates, tally


class TestTally:
    def test_simple_majority_boundary(self):
        assert tally(2, 2, 0, Formula.SIMPLE_MAJORITY, 53).is_passed is False
        result = tally(3, 1, 0, Formula.SIMPLE_MAJORITY, 53)
        assert (result.required_for, result.required_total, result.is_passed) == (3, 4, True)

    def test_simple_majority_with_no_votes(self):
        result = tally(0, 0, 0, Formula.SIMPLE_MAJORITY, 53)
        assert result.required_for == 1
        assert result.is_passed is False

    def test_abstentions_count_as_votes_cast(self):
        # 3 of 6 is not more than half
        assert tally(3, 0, 3, Formula.SIMPLE_MAJORITY, 53).is_passed is False

    @pytest.mark.parametrize("for_count,against,passed", [(2, 1, True), (1, 2, False)])
    def test_two_thirds_of_three(self, for_count, against, passed):
        result = tally(for_count, against, 0, Formula.TWO_THIRDS, 53)
        assert result.required_for == 2
        assert result.is_passed is passed

    def test_two_thirds_rounds_up(self):
        result = tally(2, 2, 0, Formula.TWO_THIRDS, 53)
        assert result.required_for == 3
        assert result.is_passed is False

    def test_three_quarters(self):
        assert tally(3, 1, 0, Formula.THREE_QUARTERS, 53).is_passed is True
        result = tally(3, 2, 0, Formula.THREE_QUARTERS, 53)
        assert result.required_for == 4
        assert result.is_passed is False

    def test_absolute_majority_is_over_membership(self):
        result = tally(27, 0, 0, Formula.ABSOLUTE_MAJORITY, 53)
        assert (result.required_for, result.required_total, result.is_passed) == (27, 53, True)
        assert tally(26, 0, 0, Formula.ABSOLUTE_MAJORITY, 53).is_passed is False

    def test_absolute_majority_ignores_abstentions(self):
        assert tally(26, 0, 20, Formula.ABSOLUTE_MAJORITY, 53).is_passed is False

    def test_unknown_formula_is_simple_majority(self):
        assert tally(3, 1, 0, "9", 53) == tally(3, 1, 0, Formula.SIMPLE_MAJORITY, 53)
        assert Formula.parse("9") is Formula.SIMPLE_MAJORITY
        assert Formula.parse(" 2 ") is Formula.THREE_QUARTERS


class TestClassifyRegular:
    def test_quorum_not_met(self):
        outcome = classify_regular({"for": 2}, Formula.SIMPLE_MAJORITY, quorum=3, total_members=10)
        assert outcome.status is ProposalStatus.NOT_APPROVED
        assert outcome.quorum_met is False

    def test_against_beats_for(self):
        outcome = classify_regular({"for": 2, "against": 3}, Formula.SIMPLE_MAJORITY, 1, 10)
        assert outcome.status is ProposalStatus.REJECTED

    def test_abstentions_outnumber_decided(self):
        outcome = classify_regular({"for": 2, "against": 1, "abstain": 4}, Formula.SIMPLE_MAJORITY, 1, 10)
        assert outcome.status is ProposalStatus.NOT_APPROVED

    def test_approved(self):
        outcome = classify_regular({"for": 5, "against": 1}, Formula.SIMPLE_MAJORITY, 3, 10)
        assert outcome.status is ProposalStatus.APPROVED
        assert outcome.total_voted == 6
        assert outcome.not_voted == 4
        assert outcome.turnout_percent == 60

    def test_passes_majority_but_not_formula(self):
        outcome = classify_regular({"for": 3, "against": 2}, Formula.TWO_THIRDS, 1, 10)
        assert outcome.status is ProposalStatus.NOT_APPROVED


class TestQuantitative:
    @pytest.mark.parametrize("votes,expected", [
        ({1: 3, 2: 2, 3: 1}, [1, 2]),
        ({1: 2, 2: 2, 3: 1}, [1, 2]),
        ({1: 3, 2: 1, 3: 1}, [1, 2, 3]),
        ({1: 3, 2: 0}, [1]),
        ({1: 0, 2: 0}, []),
    ])
    def test_leading_candidates(self, votes, expected):
        assert leading_candidates(votes) == expected

    def test_first_stage_majority_wins(self):
        outcome = evaluate_quantitative({"item_1": 3, "item_2": 1, "abstain": 1}, [1, 2, 3], 1, 1, 3)
        assert outcome.winner == 1
        assert outcome.status is ProposalStatus.APPROVED
        assert not outcome.needs_runoff

    def test_abstentions_can_deny_a_majority(self):
        outcome = evaluate_quantitative({"item_1": 2, "abstain": 2}, [1, 2], 1, 1, 3)
        assert outcome.winner is None
        assert not outcome.needs_runoff

    def test_first_stage_without_majority_goes_to_runoff(self):
        outcome = evaluate_quantitative({"item_1": 2, "item_2": 2, "item_3": 1}, [1, 2, 3], 1, 1, 3)
        assert outcome.winner is None
        assert outcome.needs_runoff
        assert outcome.runoff_candidates == [1, 2]

    def test_runoff_stage_is_plurality(self):
        outcome = evaluate_quantitative({"item_1": 2, "item_2": 1, "abstain": 2}, [1, 2], 2, 1, 3)
        assert outcome.winner == 1

    def test_runoff_tie_that_cannot_narrow_ends(self):
        outcome = evaluate_quantitative({"item_1": 2, "item_2": 2}, [1, 2], 2, 1, 3)
        assert outcome.winner is None
        assert outcome.runoff_candidates == []
        assert outcome.status is ProposalStatus.NOT_APPROVED

    def test_stage_limit(self):
        outcome = evaluate_quantitative({"item_1": 2, "item_2": 2, "item_3": 1}, [1, 2, 3], 3, 1, 3)
        assert not outcome.needs_runoff

    def test_quorum_not_met(self):
        outcome = evaluate_quantitative({"item_1": 2}, [1, 2], 1, 5, 3)
        assert outcome.quorum_met is False
        assert outcome.winner is None
        assert not outcome.needs_runoff
