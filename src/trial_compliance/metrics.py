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
"""Computes registration compliance metrics over a collection of trial records.

Every function here is pure: records are read, never mutated, and each call
builds a fresh result. Rates with an empty denominator are reported as 0.0.
"""

import logging
import math
from collections.abc import Iterable
from datetime import date, datetime

from .models import ComplianceMetrics, HistogramBin, TrialRecord

logger = logging.getLogger(__name__)

HISTOGRAM_BINS = 20
DATE_FORMAT = "%Y-%m-%d"


def percentage(numerator: int, denominator: int) -> float:
    """Return numerator as a percentage of denominator, or 0.0 if it is zero."""
    if denominator == 0:
        return 0.0
    return numerator / denominator * 100


def _parse_date(value: str) -> date | None:
    try:
        return datetime.strptime(value, DATE_FORMAT).date()
    except (TypeError, ValueError):
        return None


def compute_metrics(records: Iterable[TrialRecord]) -> ComplianceMetrics:
    """
    Computes TRN reporting, registration timing and journal compliance metrics.

    A record takes part in the prospective/retrospective classification only if
    it reports a TRN and carries both an enrollment and a registration date.
    Registration on or before the enrollment date is prospective; otherwise the
    record is retrospective and its delay in whole weeks is recorded.

    Args:
        records: The trial records to aggregate. Order does not matter.

    Returns:
        A ComplianceMetrics snapshot.
    """
    records = list(records)
    total = len(records)
    with_trn = sum(1 for record in records if record.has_trn)

    prospective = 0
    retrospective = 0
    invalid = 0
    delays: list[int] = []

    candidates = [
        record
        for record in records
        if record.has_trn and record.registration_date and record.enrollment_date
    ]
    for record in candidates:
        registered = _parse_date(record.registration_date)
        enrolled = _parse_date(record.enrollment_date)
        if registered is None or enrolled is None:
            logger.warning(
                "Skipping timing classification for %s: unparseable date "
                "(enrollment=%r, registration=%r)",
                record.trial_id,
                record.enrollment_date,
                record.registration_date,
            )
            invalid += 1
            continue

        if registered <= enrolled:
            prospective += 1
        else:
            retrospective += 1
            delays.append((registered - enrolled).days // 7)

    timed = prospective + retrospective

    icmje = [record for record in records if record.is_icmje_member]
    non_icmje = [record for record in records if not record.is_icmje_member]

    metrics = ComplianceMetrics(
        total=total,
        with_trn=with_trn,
        trn_rate=percentage(with_trn, total),
        prospective=prospective,
        retrospective=retrospective,
        prospective_rate=percentage(prospective, timed),
        icmje_trn_rate=percentage(sum(1 for r in icmje if r.has_trn), len(icmje)),
        non_icmje_trn_rate=percentage(
            sum(1 for r in non_icmje if r.has_trn), len(non_icmje)
        ),
        delays=tuple(delays),
        timed_records=timed,
        invalid_date_records=invalid,
    )
    logger.debug(
        "Computed metrics over %d records (%d timed, %d invalid dates)",
        total,
        timed,
        invalid,
    )
    return metrics


def build_delay_histogram(delays: Iterable[int]) -> list[HistogramBin]:
    """
    Bins registration delays into a dense 20-bin histogram.

    Bin index i is labelled week i + 1. A delay of d weeks lands in index
    clamp(d, 0, 19), so every delay of 19 weeks or more shares the last bin.
    Empty bins are kept with a count of 0.
    """
    counts = [0] * HISTOGRAM_BINS
    for delay in delays:
        index = min(max(0, math.floor(delay)), HISTOGRAM_BINS - 1)
        counts[index] += 1
    return [HistogramBin(week=i + 1, count=count) for i, count in enumerate(counts)]
