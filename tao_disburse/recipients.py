"""
Recipient lists for TAO Disburse.

Recipients arrive as CSV or JSON files and are turned into an ordered list
of ``Recipient`` objects. Amounts are held as integer RAO (1 TAO = 1e9 RAO)
so totals never go through floating point.

Expected CSV format:
    address,amount[,label]
    5FHneW46xGXgs5mUiveU4sbTyGBzmstUspZC92UhjJM694ty,1500000000,Alice
    5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY,2.5,Bob

An amount with a decimal point is read as TAO and converted exactly;
an integer is read as RAO.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, localcontext
from pathlib import Path

from bittensor.utils import is_valid_bittensor_address_or_public_key
from bittensor.utils.balance import Balance


RAO_PER_TAO = 10**9


@dataclass(frozen=True)
class Recipient:
    """A single payment recipient."""

    address: str
    amount: int  # in RAO
    label: str = ""

    def validate(self) -> list[str]:
        """Validate this recipient. Returns list of error strings."""
        errors = []
        if not self.address:
            errors.append("Missing address")
        elif not is_valid_bittensor_address_or_public_key(self.address):
            errors.append(f"Invalid ss58 address: {self.address}")
        if self.amount <= 0:
            errors.append(f"Amount must be positive, got {self.amount}")
        return errors

    @property
    def amount_tao(self) -> Balance:
        return Balance.from_rao(self.amount)

    def to_dict(self) -> dict:
        data = {"address": self.address, "amount": str(self.amount)}
        if self.label:
            data["label"] = self.label
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Recipient":
        return cls(
            address=str(data["address"]),
            amount=parse_amount(str(data["amount"])),
            label=str(data.get("label", "")),
        )


def parse_amount(text: str) -> int:
    """
    Parse an amount into RAO.

    ``"1500000000"`` is RAO, ``"1.5"`` is TAO. Raises ValueError for
    anything that is not a positive amount expressible in whole RAO.
    """
    text = text.strip()
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"invalid amount '{text}'")

    if not value.is_finite():
        raise ValueError(f"invalid amount '{text}'")

    if "." in text or "e" in text.lower():
        # Enough precision that scaling to RAO is exact
        with localcontext() as ctx:
            ctx.prec = len(text) + 12
            rao = value * RAO_PER_TAO
        if rao != rao.to_integral_value():
            raise ValueError(f"amount '{text}' has more than 9 decimal places")
    else:
        rao = value

    if rao <= 0:
        raise ValueError(f"amount must be positive, got '{text}'")
    return int(rao)


def parse_recipients_csv(filepath: str | Path) -> list[Recipient]:
    """Parse a CSV file of recipients (header row required)."""
    recipients = []
    filepath = Path(filepath)

    with open(filepath, "r", newline="") as f:
        delimiter = "\t" if filepath.suffix.lower() == ".tsv" else ","
        reader = csv.DictReader(f, delimiter=delimiter)

        if reader.fieldnames is None:
            raise ValueError("CSV file is empty or has no headers")

        for row_num, row in enumerate(reader, start=2):
            normalized = {
                (k or "").strip().lower(): (v or "").strip()
                for k, v in row.items()
            }

            address = normalized.get("address", "")
            amount_str = normalized.get("amount", "")
            label = normalized.get("label", normalized.get("name", ""))

            if not address:
                raise ValueError(f"Row {row_num}: missing address")
            if not amount_str:
                raise ValueError(f"Row {row_num}: missing amount")

            try:
                amount = parse_amount(amount_str)
            except ValueError as e:
                raise ValueError(f"Row {row_num}: {e}")

            recipients.append(Recipient(address=address, amount=amount, label=label))

    return recipients


def parse_recipients_json(filepath: str | Path) -> list[Recipient]:
    """
    Parse a JSON file of recipients.

    Expected format:
        [
            {"address": "5FHne...", "amount": "1500000000", "label": "Alice"},
            {"address": "5Grwv...", "amount": "2.5"}
        ]
    """
    filepath = Path(filepath)
    with open(filepath, "r") as f:
        data = json.load(f)

    if not isinstance(data, list):
        raise ValueError("JSON must contain a list of recipient objects")

    recipients = []
    for i, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ValueError(f"Entry {i}: must be an object")
        if "address" not in entry:
            raise ValueError(f"Entry {i}: missing 'address' field")
        if "amount" not in entry:
            raise ValueError(f"Entry {i}: missing 'amount' field")
        try:
            recipients.append(Recipient.from_dict(entry))
        except ValueError as e:
            raise ValueError(f"Entry {i}: {e}")

    return recipients


def parse_recipients(filepath: str | Path) -> list[Recipient]:
    """Auto-detect file format and parse recipients."""
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Recipient file not found: {filepath}")

    suffix = filepath.suffix.lower()
    if suffix == ".json":
        return parse_recipients_json(filepath)
    elif suffix in (".csv", ".tsv", ".txt"):
        return parse_recipients_csv(filepath)
    else:
        # Try CSV first, then JSON
        try:
            return parse_recipients_csv(filepath)
        except (ValueError, csv.Error):
            return parse_recipients_json(filepath)


def validate_recipients(recipients: list[Recipient]) -> tuple[bool, list[str]]:
    """
    Validate all recipients. Returns (is_valid, list_of_errors).
    Also checks for duplicate addresses.
    """
    errors = []
    seen_addresses = {}

    for i, r in enumerate(recipients):
        for err in r.validate():
            errors.append(f"Recipient {i + 1} ({r.label or r.address[:12]}...): {err}")

        if r.address in seen_addresses:
            prev = seen_addresses[r.address]
            errors.append(
                f"Duplicate address at positions {prev + 1} and {i + 1}: {r.address[:16]}..."
            )
        seen_addresses[r.address] = i

    return len(errors) == 0, errors


def total_amount(recipients: list[Recipient]) -> int:
    """Sum of recipient amounts in RAO."""
    return sum((r.amount for r in recipients), 0)
