# cogs/Legislature/tally.py
"""Vote counting rules.

Everything here is pure: counts in, decisions out. The voting engine feeds it
the per-stage counts it reads from storage.
"""
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .models import (
    Formula,
    ProposalStatus,
    VOTE_ABSTAIN,
    VOTE_AGAINST,
    VOTE_FOR,
    item_choice,
)


@dataclass(frozen=True)
class TallyResult:
    required_for: int
    required_total: int
    is_passed: bool


def tally(for_count: int, against_count: int, abstain_count: int,
          formula, total_members: int) -> TallyResult:
    """Apply a threshold formula to a set of counts.

    Ratio formulas are computed over the votes actually cast. The absolute
    majority formula is computed over the whole membership, so abstentions and
    members who never voted count against passage.
    """
    formula = Formula.parse(formula)
    total_voted = for_count + against_count + abstain_count

    if formula is Formula.TWO_THIRDS:
        required_for, required_total = math.ceil(total_voted * 2 / 3), total_voted
    elif formula is Formula.THREE_QUARTERS:
        required_for, required_total = math.ceil(total_voted * 3 / 4), total_voted
    elif formula is Formula.ABSOLUTE_MAJORITY:
        required_for, required_total = math.ceil(total_members / 2), total_members
    else:
        required_for, required_total = total_voted // 2 + 1, total_voted

    return TallyResult(required_for, required_total, for_count >= required_for)


@dataclass
class RegularOutcome:
    for_count: int
    against_count: int
    abstain_count: int
    quorum: int
    total_members: int
    formula: Formula
    result: TallyResult
    status: ProposalStatus

    @property
    def total_voted(self) -> int:
        return self.for_count + self.against_count + self.abstain_count

    @property
    def quorum_met(self) -> bool:
        return self.total_voted >= self.quorum

    @property
    def not_voted(self) -> int:
        return max(0, self.total_members - self.total_voted)

    @property
    def turnout_percent(self) -> int:
        if self.total_members <= 0:
            return 0
        return round(self.total_voted / self.total_members * 100)


def classify_regular(counts: Dict[str, int], formula, quorum: int, total_members: int) -> RegularOutcome:
    """Decide a for/against/abstain vote.

    Order matters: a missed quorum or an against-majority decides the result
    before the formula is consulted.
    """
    formula = Formula.parse(formula)
    for_count = counts.get(VOTE_FOR, 0)
    against_count = counts.get(VOTE_AGAINST, 0)
    abstain_count = counts.get(VOTE_ABSTAIN, 0)
    result = tally(for_count, against_count, abstain_count, formula, total_members)

    total_voted = for_count + against_count + abstain_count
    if total_voted < quorum:
        status = ProposalStatus.NOT_APPROVED
    elif against_count > for_count:
        status = ProposalStatus.REJECTED
    elif abstain_count > for_count + against_count:
        status = ProposalStatus.NOT_APPROVED
    elif result.is_passed:
        status = ProposalStatus.APPROVED
    else:
        status = ProposalStatus.NOT_APPROVED

    return RegularOutcome(for_count, against_count, abstain_count, quorum,
                          total_members, formula, result, status)


@dataclass
class QuantitativeOutcome:
    stage: int
    item_votes: Dict[int, int]
    abstain_count: int
    quorum: int
    winner: Optional[int] = None
    runoff_candidates: List[int] = field(default_factory=list)

    @property
    def total_voted(self) -> int:
        return sum(self.item_votes.values()) + self.abstain_count

    @property
    def quorum_met(self) -> bool:
        return self.total_voted >= self.quorum

    @property
    def needs_runoff(self) -> bool:
        return self.winner is None and bool(self.runoff_candidates)

    @property
    def status(self) -> ProposalStatus:
        return ProposalStatus.APPROVED if self.winner is not None else ProposalStatus.NOT_APPROVED


def leading_candidates(item_votes: Dict[int, int]) -> List[int]:
    """Items in the top tier of votes, widened to the runner-up tier when the top is unique.

    Items without a single vote never qualify.
    """
    tiers = sorted({n for n in item_votes.values() if n > 0}, reverse=True)
    if not tiers:
        return []
    top_count = sum(1 for n in item_votes.values() if n == tiers[0])
    cutoff = tiers[0] if top_count > 1 or len(tiers) == 1 else tiers[1]
    return sorted(i for i, n in item_votes.items() if n >= cutoff)


def evaluate_quantitative(counts: Dict[str, int], candidates: List[int], stage: int,
                          quorum: int, max_stages: int) -> QuantitativeOutcome:
    """Decide one stage of a rated vote.

    Stage 1 needs an item backed by a simple majority of everyone who voted
    (abstentions included). Runoff stages are decided by plurality among the
    remaining candidates. Without a winner the leading candidates go to the
    next stage, as long as the stage limit allows it and, after the first
    stage, the field actually narrows.
    """
    item_votes = {i: counts.get(item_choice(i), 0) for i in candidates}
    outcome = QuantitativeOutcome(stage, item_votes, counts.get(VOTE_ABSTAIN, 0), quorum)

    if not outcome.quorum_met or not any(item_votes.values()):
        return outcome

    total_voted = outcome.total_voted
    if stage == 1:
        for index, n in item_votes.items():
            if tally(n, total_voted - n, 0, Formula.SIMPLE_MAJORITY, total_voted).is_passed:
                outcome.winner = index
                return outcome
        leaders = leading_candidates(item_votes)
    else:
        top = max(item_votes.values())
        leaders = sorted(i for i, n in item_votes.items() if n == top)
        if len(leaders) == 1:
            outcome.winner = leaders[0]
            return outcome

    narrows = stage == 1 or len(leaders) < len(candidates)
    if len(leaders) >= 2 and stage < max_stages and narrows:
        outcome.runoff_candidates = leaders
    return outcome
