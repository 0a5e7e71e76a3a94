"""Prompt construction for the merchant/category classifier.

The user content lists one transaction per line as ``ID: <id>, Desc: <text>``
after the owner's category names, and asks for a bare JSON array of
``{"id", "merchant", "category"}`` objects.
"""

from __future__ import annotations

from collections.abc import Sequence

UNCATEGORIZED = "Uncategorized"

_MERCHANT_RULES = """\
CRITICAL RULE for "merchant":
- Extract ONLY the brand or franchise name.
- REMOVE all cities, locations, suburbs, branch codes, and store numbers.
- REMOVE prefixes like "CROSS-BORDER CARD FEE", "Purchase at", "Debit", "POS PURCHASE".
- If the description is a URL (e.g., "APPLE.COM/BILL"), extract the main name ("Apple").

Examples:
  - "KFC CENT400723 CENTURION ZA" -> "KFC"
  - "UBER EATS JOHANNESBURG ZA" -> "Uber Eats"
  - "KAUAI IRENE LINK DORINGKLOOF" -> "Kauai"
  - "CHECKERS HYPER MENLYN" -> "Checkers Hyper"
  - "CROSS-BORDER CARD FEE - APPLE.COM/BILL" -> "Apple"
"""


def build_system_instructions() -> str:
    return (
        "You are a careful financial assistant that cleans up bank transaction "
        "descriptions. Answer with JSON only."
    )


def _single_line(text: str) -> str:
    return " ".join(str(text).split())


def build_user_content(
    transactions: Sequence[tuple[str, str]],
    category_names: Sequence[str],
) -> str:
    """Return the classifier prompt for ``(id, raw_description)`` pairs.

    Descriptions are collapsed to a single line so that each transaction
    occupies exactly one ``ID: ..., Desc: ...`` line.
    """

    categories = ", ".join(category_names) if category_names else "(none yet)"
    lines = "\n".join(f"ID: {tx_id}, Desc: {_single_line(desc)}" for tx_id, desc in transactions)
    return (
        "I have a list of bank transactions. Suggest a clean \"merchant\" name and a "
        "matching \"category\" from my list for each one.\n\n"
        f"{_MERCHANT_RULES}\n"
        f"My Categories: {categories}\n\n"
        f"Transactions:\n{lines}\n\n"
        "Return ONLY a valid JSON array of objects with this format:\n"
        '[{"id": "transaction_id", "merchant": "Merchant Name", '
        '"category": "Exact Category Name"}]\n'
        f'If no category fits, use "{UNCATEGORIZED}".'
    )


__all__ = ["UNCATEGORIZED", "build_system_instructions", "build_user_content"]
