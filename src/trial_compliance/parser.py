# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Contains functions for reading trial records from tabular or JSON exports.

The CSV layout uses the column headings documented for dataset uploads:
Journal Name, Publication Date, ICMJE Member, Trial Registration Number,
Enrollment Date and Registration Date, with optional ID and Impact Factor
Quartile columns.
"""

import csv
import json
import logging
from pathlib import Path
from typing import Any, TextIO

from pydantic import ValidationError

from .models import TrialRecord

logger = logging.getLogger(__name__)

JOURNAL_NAME = "Journal Name"
PUBLICATION_DATE = "Publication Date"
ICMJE_MEMBER = "ICMJE Member"
TRN = "Trial Registration Number"
ENROLLMENT_DATE = "Enrollment Date"
REGISTRATION_DATE = "Registration Date"
RECORD_ID = "ID"
IMPACT_FACTOR_QUARTILE = "Impact Factor Quartile"

_TRUE = {"true", "yes", "y", "1"}
_FALSE = {"false", "no", "n", "0"}


def parse_bool(value: Any) -> bool | None:
    """Interpret a spreadsheet boolean cell. Returns None if it is unreadable."""
    if isinstance(value, bool):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    return None


def _cell(row: dict[str, Any], column: str) -> str:
    value = row.get(column)
    return value.strip() if isinstance(value, str) else ""


def parse_record_row(row: dict[str, Any], row_number: int) -> TrialRecord | None:
    """
    Parses a single CSV row into a TrialRecord.

    Args:
        row: A mapping of column heading to cell text, as produced by csv.DictReader.
        row_number: The 1-based data row number, used for the default ID and logging.

    Returns:
        A TrialRecord, or None if the row is invalid.
    """
    if not isinstance(row, dict):
        return None

    journal_name = _cell(row, JOURNAL_NAME)
    publication_date = _cell(row, PUBLICATION_DATE)
    if not journal_name or not publication_date:
        logger.warning("Skipping row %d: missing journal name or publication date", row_number)
        return None

    is_icmje_member = parse_bool(_cell(row, ICMJE_MEMBER))
    if is_icmje_member is None:
        logger.warning(
            "Skipping row %d: unreadable ICMJE Member value %r",
            row_number,
            row.get(ICMJE_MEMBER),
        )
        return None

    trn = _cell(row, TRN)
    quartile = _cell(row, IMPACT_FACTOR_QUARTILE)

    try:
        return TrialRecord(
            trial_id=_cell(row, RECORD_ID) or f"ROW-{row_number}",
            journal_name=journal_name,
            is_icmje_member=is_icmje_member,
            has_trn=bool(trn),
            trn=trn or None,
            enrollment_date=_cell(row, ENROLLMENT_DATE) or None,
            registration_date=_cell(row, REGISTRATION_DATE) or None,
            publication_date=publication_date,
            impact_factor_quartile=quartile or None,
        )
    except ValidationError as e:
        logger.warning("Skipping row %d: %s", row_number, e)
        return None


def read_records_csv(stream: TextIO) -> list[TrialRecord]:
    """Reads trial records from a CSV stream with a header row, skipping invalid rows."""
    reader = csv.DictReader(stream)
    records = []
    for row_number, row in enumerate(reader, start=1):
        record = parse_record_row(row, row_number)
        if record is not None:
            records.append(record)
    logger.info("Read %d trial records from CSV", len(records))
    return records


def load_records_json(stream: TextIO) -> list[TrialRecord]:
    """
    Reads trial records from a JSON array.

    Items use the camelCase export shape (journalName, hasTRN, ...). Items that
    fail validation are skipped with a warning.
    """
    payload = json.load(stream)
    if not isinstance(payload, list):
        raise ValueError("Expected a JSON array of trial records")

    records = []
    for index, item in enumerate(payload, start=1):
        try:
            records.append(TrialRecord.model_validate(item))
        except ValidationError as e:
            logger.warning("Skipping JSON record %d: %s", index, e)
    logger.info("Read %d trial records from JSON", len(records))
    return records


def load_records(path: Path) -> list[TrialRecord]:
    """Loads trial records from a .csv or .json file."""
    suffix = path.suffix.lower()
    if suffix == ".csv":
        with open(path, newline="", encoding="utf-8") as f:
            return read_records_csv(f)
    if suffix == ".json":
        with open(path, encoding="utf-8") as f:
            return load_records_json(f)
    raise ValueError(f"Unsupported record file type: {path.suffix or '<none>'}")
