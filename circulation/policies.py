from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Protocol

from sqlalchemy.orm import Session

from circulation import models


VIOLATION_POLICY_POINTS: Dict[str, int] = {
    "LOST_BOOK": 3,
    "DAMAGED_BOOK": 2,
    "WORN_BOOK": 1,
}

# Used when the policy row is not a FIXED percentage policy
DEFAULT_PENALTY_PERCENT: Dict[str, float] = {
    "LOST_BOOK": 100,
    "DAMAGED_BOOK": 100,
    "WORN_BOOK": 50,
}

POLICY_ID_TO_CONDITION: Dict[str, models.ItemCondition] = {
    "LOST_BOOK": models.ItemCondition.LOST,
    "DAMAGED_BOOK": models.ItemCondition.DAMAGED,
    "WORN_BOOK": models.ItemCondition.WORN,
}


@dataclass(frozen=True)
class ViolationPolicyMetadata:
    points: int
    penalty_percent: float


class PolicyRepository(Protocol):
    """Lookup of fee policies and their violation metadata."""

    def get_policy(self, policy_id: str) -> Optional[models.Policy]:
        ...

    def get_violation_metadata(
        self, policy_id: str
    ) -> Optional[ViolationPolicyMetadata]:
        ...


class SqlPolicyRepository:
    """
    Policy repository backed by the policies table.

    Point values come from the mapping given at construction; a policy id
    missing from it is not a violation policy and yields None.
    """

    def __init__(
        self,
        db: Session,
        points: Mapping[str, int] = VIOLATION_POLICY_POINTS,
        default_penalty_percent: Mapping[str, float] = DEFAULT_PENALTY_PERCENT,
    ):
        self.db = db
        self.points = dict(points)
        self.default_penalty_percent = dict(default_penalty_percent)

    def get_policy(self, policy_id: str) -> Optional[models.Policy]:
        return (
            self.db.query(models.Policy)
            .filter(models.Policy.id == policy_id, models.Policy.is_deleted == False)
            .first()
        )

    def get_violation_metadata(
        self, policy_id: str
    ) -> Optional[ViolationPolicyMetadata]:
        points = self.points.get(policy_id)
        if points is None:
            return None

        policy = self.get_policy(policy_id)
        if policy is not None and policy.unit == models.PolicyUnit.FIXED:
            penalty_percent = policy.amount
        else:
            penalty_percent = self.default_penalty_percent.get(policy_id, 0)

        return ViolationPolicyMetadata(points=points, penalty_percent=penalty_percent)
