"""
Parsing utilities for ProxyPrint.
"""

import json
import re
import unicodedata
from typing import List

from config import MM_TO_PT
from models import CardRecord


def normalize_card_name(name: str) -> str:
    """
    Normalize a card name (or file stem) for consistent key generation.
    Removes accents, punctuation, and whitespace, and converts to lowercase.
    """
    name = name.lower().strip()
    # Decompose unicode characters (like accents) into base characters
    normalized_name = unicodedata.normalize('NFKD', name).encode('ascii', 'ignore').decode('ascii')
    # Remove common punctuation and whitespace used as separators
    normalized_name = re.sub(r"[',\.:()\[\]\s_]", "", normalized_name)
    normalized_name = re.sub(r"[^a-z0-9-]", "", normalized_name)
    return normalized_name.strip()


def parse_card_records(payload) -> List[CardRecord]:
    """
    Accepts either a list of card dicts or {"cards": [...]}.
    Records with a count below 1 are dropped.
    """
    if isinstance(payload, dict):
        payload = payload.get("cards", [])
    if not isinstance(payload, list):
        raise ValueError("Card list must be a JSON array or an object with a 'cards' array.")
    records: List[CardRecord] = []
    for i, item in enumerate(payload):
        if not isinstance(item, dict):
            raise ValueError(f"Card entry #{i + 1} is not an object: {item!r}")
        try:
            record = CardRecord.from_dict(item)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Card entry #{i + 1} is invalid: {e}")
        if record.count > 0:
            records.append(record)
    return records


def load_card_records(path: str) -> List[CardRecord]:
    with open(path, "r", encoding="utf-8") as f:
        try:
            payload = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"'{path}' is not valid JSON: {e}")
    return parse_card_records(payload)


def parse_dimension_to_mm(dim_str: str, default_unit_is_mm: bool = True) -> float:
    """'3mm', '0.125in', '9pt' -> millimetres. Bare numbers are mm by default."""
    dim_str = dim_str.lower().strip(); val_str = ""; unit_str = ""
    for char in dim_str:
        if char.isdigit() or char == '.': val_str += char
        else: unit_str += char
    unit_str = unit_str.strip()
    if not val_str: raise ValueError(f"No numeric value in dimension: '{dim_str}'")
    value = float(val_str)
    if unit_str == "in" or unit_str == "\"": return value * 25.4
    elif unit_str == "mm": return value
    elif unit_str == "pt": return value / MM_TO_PT
    elif not unit_str and default_unit_is_mm: return value
    elif not unit_str: raise ValueError(f"Dimension '{dim_str}' lacks units (in, mm, pt).")
    else: raise ValueError(f"Unknown unit '{unit_str}' in '{dim_str}'. Use in, mm, pt.")
