import csv
import re
from io import StringIO
from typing import Mapping, Sequence

from models import Transaction
from services import UNCATEGORIZED

FORMULA_TRIGGERS = ("=", "+", "-", "@", "\t", "\r")
DANGEROUS_PATTERNS = (
    r"^cmd\s*",
    r"^powershell\s*",
    r"^bash\s*",
    r"^sh\s*",
    r"^\.",
    r"^http[s]?://",
)


def sanitize_csv_value(value: str) -> str:
    """
    Prefix cells that a spreadsheet would treat as formulas or commands with a tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()
    if value.startswith(FORMULA_TRIGGERS):
        return "\t" + value
    for pattern in DANGEROUS_PATTERNS:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value
    return value


def export_transactions(
    transactions: Sequence[Transaction], category_names: Mapping[int, str]
) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["Date", "Type", "Amount", "Category", "Description"])
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                txn.type.value,
                f"{txn.amount_cents / 100:.2f}",
                sanitize_csv_value(category_names.get(txn.category_id, UNCATEGORIZED)),
                sanitize_csv_value(txn.description or ""),
            ]
        )
    return output.getvalue()
