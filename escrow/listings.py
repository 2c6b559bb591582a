from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .models import PostType


@dataclass(frozen=True)
class Listing:
    post_type: PostType
    post_id: int
    owner_id: str
    credits: int


class ListingDirectory(ABC):
    """Read-only view of marketplace listings owned by the record store."""

    @abstractmethod
    def lookup(self, post_type: PostType, post_id: int) -> Optional[Listing]:
        ...


class InMemoryListingDirectory(ListingDirectory):
    def __init__(self):
        self._listings: Dict[Tuple[PostType, int], Listing] = {}

    def add(self, post_type: PostType, post_id: int, owner_id: str, credits: int) -> Listing:
        listing = Listing(post_type=PostType(post_type), post_id=post_id, owner_id=owner_id, credits=credits)
        self._listings[(listing.post_type, post_id)] = listing
        return listing

    def lookup(self, post_type: PostType, post_id: int) -> Optional[Listing]:
        return self._listings.get((PostType(post_type), post_id))
