"""
Outcome types of the resolution engine.

Resolution never raises for "no match" or "too many matches"; callers get
one of these discriminated results and decide what to do.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from market_etl.core.models import SymbolMapping


class Matched(BaseModel):
    """
    Attributes:
        sid: Resolved canonical symbol
        confidence: 1.0 for mapping and exact-symbol matches, capped for fuzzy
        stage: 1 mapping, 2 exact symbol, 3 fuzzy name
        requires_verification: True for fuzzy matches
    """

    kind: Literal["matched"] = "matched"
    sid: int
    confidence: float = Field(..., ge=0.0, le=1.0)
    stage: int = Field(..., ge=1, le=3)
    requires_verification: bool = False


class Ambiguous(BaseModel):
    kind: Literal["ambiguous"] = "ambiguous"
    sids: list[int]
    stage: int = Field(..., ge=2, le=3)


class Unmatched(BaseModel):
    kind: Literal["unmatched"] = "unmatched"


ResolveResult = Annotated[Union[Matched, Ambiguous, Unmatched], Field(discriminator="kind")]


class Registered(BaseModel):
    """
    Attributes:
        mapping: The stored mapping, or the refused claim with ``id=None``
        displaced: The sid's previous mapping under another identifier,
            when this registration replaced it
    """

    kind: Literal["registered"] = "registered"
    mapping: SymbolMapping
    displaced: SymbolMapping | None = None

    @property
    def stored(self) -> bool:
        return self.mapping.id is not None


class Conflict(BaseModel):
    """
    Two sids claimed the same provider identifier.

    ``winner`` stays verified, ``loser`` is kept but demoted to unverified.
    A losing claim whose sid already maps to another identifier at this
    source is not written and comes back with ``id=None``.
    """

    kind: Literal["conflict"] = "conflict"
    source_name: str
    source_identifier: str
    winner: SymbolMapping
    loser: SymbolMapping
    displaced: SymbolMapping | None = None


RegisterResult = Annotated[Union[Registered, Conflict], Field(discriminator="kind")]


class SweepReport(BaseModel):
    found: int = 0
    not_found: int = 0
    skipped: int = 0
    ambiguous: int = 0
    errors: int = 0

    @property
    def processed(self) -> int:
        return self.found + self.not_found + self.skipped + self.ambiguous + self.errors
