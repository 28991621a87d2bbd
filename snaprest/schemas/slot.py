"""
RepositorySlotAssignment schema - a numbered repository entry owned by one
backup source within the primary's multi-repository configuration.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class RepositorySlotAssignment:
    """
    Attributes:
        owner_identity: Stable identifier of the backup source (host address)
        slot_number: Positive repository number (repo<N>-*)
        existing: True when the destination already held this owner's entry
    """
    owner_identity: str
    slot_number: int
    existing: bool = False

    def __post_init__(self):
        if self.slot_number < 1:
            raise ValueError("slot_number must be >= 1")

    @property
    def prefix(self) -> str:
        return f"repo{self.slot_number}"
