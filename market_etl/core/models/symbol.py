"""
Canonical security identity: SecurityType, SID encoding and CanonicalSymbol.

A SID is a 64-bit integer whose high bits carry the security type (a 4, 5
or 6 bit prefix depending on how populous the type is) and whose low bits
carry a per-type counter. SIDs are stored as signed BIGINT, so prefixes
with the top bit set come back negative.
"""

from enum import Enum

from pydantic import BaseModel, Field


class SecurityType(str, Enum):
    EQUITY = "Equity"
    PREFERRED_STOCK = "PreferredStock"
    ETF = "ETF"
    MUTUAL_FUND = "MutualFund"
    REIT = "REIT"
    ADR = "ADR"
    CD = "CD"
    BOND = "Bond"
    GOVERNMENT_BOND = "GovernmentBond"
    CORPORATE_BOND = "CorporateBond"
    MUNICIPAL_BOND = "MunicipalBond"
    TREASURY_BILL = "TreasuryBill"
    OPTION = "Option"
    FUTURE = "Future"
    WARRANT = "Warrant"
    INDEX = "Index"
    CURRENCY = "Currency"
    COMMODITY = "Commodity"
    CRYPTOCURRENCY = "Cryptocurrency"
    OTHER = "Other"

    @classmethod
    def from_alpha_vantage(cls, asset_type: str) -> "SecurityType":
        """Map an AlphaVantage ``AssetType`` string onto a SecurityType."""
        normalized = (asset_type or "").strip().lower()
        return _ALPHA_VANTAGE_ASSET_TYPES.get(normalized, cls.OTHER)


_ALPHA_VANTAGE_ASSET_TYPES = {
    "common stock": SecurityType.EQUITY,
    "stock": SecurityType.EQUITY,
    "equity": SecurityType.EQUITY,
    "preferred stock": SecurityType.PREFERRED_STOCK,
    "etf": SecurityType.ETF,
    "mutual fund": SecurityType.MUTUAL_FUND,
    "reit": SecurityType.REIT,
    "adr": SecurityType.ADR,
    "bond": SecurityType.BOND,
    "index": SecurityType.INDEX,
    "currency": SecurityType.CURRENCY,
    "cryptocurrency": SecurityType.CRYPTOCURRENCY,
    "digital currency": SecurityType.CRYPTOCURRENCY,
    "warrant": SecurityType.WARRANT,
}

# (prefix bits, width) per type
_TYPE_CODES: dict[SecurityType, tuple[int, int]] = {
    SecurityType.EQUITY: (0b0000, 4),
    SecurityType.PREFERRED_STOCK: (0b0001, 4),
    SecurityType.ETF: (0b0010, 4),
    SecurityType.MUTUAL_FUND: (0b0011, 4),
    SecurityType.OPTION: (0b0100, 4),
    SecurityType.FUTURE: (0b0101, 4),
    SecurityType.WARRANT: (0b0110, 4),
    SecurityType.ADR: (0b0111, 4),
    SecurityType.BOND: (0b10000, 5),
    SecurityType.GOVERNMENT_BOND: (0b10001, 5),
    SecurityType.CORPORATE_BOND: (0b10010, 5),
    SecurityType.MUNICIPAL_BOND: (0b10011, 5),
    SecurityType.CRYPTOCURRENCY: (0b10100, 5),
    SecurityType.REIT: (0b10101, 5),
    SecurityType.CURRENCY: (0b110000, 6),
    SecurityType.INDEX: (0b110001, 6),
    SecurityType.COMMODITY: (0b110010, 6),
    SecurityType.CD: (0b110011, 6),
    SecurityType.TREASURY_BILL: (0b110100, 6),
    SecurityType.OTHER: (0b111111, 6),
}

_CODES_BY_WIDTH: dict[int, dict[int, SecurityType]] = {}
for _type, (_code, _width) in _TYPE_CODES.items():
    _CODES_BY_WIDTH.setdefault(_width, {})[_code] = _type

_U64 = (1 << 64) - 1


def _to_signed(value: int) -> int:
    return value - (1 << 64) if value >= (1 << 63) else value


def encode_sid(security_type: SecurityType, raw_id: int) -> int:
    """
    Pack a security type and per-type counter into a signed 64-bit SID.

    Raises:
        ValueError: If raw_id does not fit below the type prefix
    """
    code, width = _TYPE_CODES[security_type]
    shift = 64 - width
    if raw_id < 0 or raw_id >= (1 << shift):
        raise ValueError(f"raw_id {raw_id} out of range for {security_type.value}")
    return _to_signed((code << shift) | raw_id)


def decode_sid(sid: int) -> tuple[SecurityType, int]:
    """Unpack a SID into (security_type, raw_id)."""
    unsigned = sid & _U64
    for width in (4, 5, 6):
        shift = 64 - width
        security_type = _CODES_BY_WIDTH[width].get(unsigned >> shift)
        if security_type is not None:
            return security_type, unsigned & ((1 << shift) - 1)
    return SecurityType.OTHER, unsigned & ((1 << 58) - 1)


class SidGenerator:
    """
    Hands out new SIDs, continuing each type's counter from the SIDs
    already present in the symbols table.
    """

    def __init__(self, existing_sids: list[int] | None = None):
        self._next_raw_ids: dict[SecurityType, int] = {}
        for sid in existing_sids or []:
            security_type, raw_id = decode_sid(sid)
            if raw_id + 1 > self._next_raw_ids.get(security_type, 1):
                self._next_raw_ids[security_type] = raw_id + 1

    def next_sid(self, security_type: SecurityType) -> int:
        raw_id = self._next_raw_ids.get(security_type, 1)
        self._next_raw_ids[security_type] = raw_id + 1
        return encode_sid(security_type, raw_id)


class CanonicalSymbol(BaseModel):
    """
    Internally stable identity of one security.

    Attributes:
        sid: Encoded security id (PK)
        symbol: Canonical ticker, upper case (e.g. "AAPL", "BTC")
        name: Display name (e.g. "Apple Inc", "Bitcoin")
        security_type: Kind of security
    """

    sid: int
    symbol: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1)
    security_type: SecurityType

    class Config:
        json_schema_extra = {
            "example": {
                "sid": -864691128455135231,
                "symbol": "BTC",
                "name": "Bitcoin",
                "security_type": "Cryptocurrency",
            }
        }
