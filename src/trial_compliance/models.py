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
"""Defines the Pydantic data models for the application."""

from datetime import date
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

FALLBACK_ANALYSIS_MESSAGE = "Failed to analyze document due to an error."


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


class TrialRecord(BaseModel):
    """Represents one published clinical trial study.

    Enrollment and registration dates are kept as the raw ISO strings
    supplied by the record source. The metrics engine parses them, so a
    malformed date excludes the record from timing classification instead
    of rejecting the whole record.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    trial_id: str = Field(..., alias="id")  # Renamed from id to avoid shadowing a Python builtin
    journal_name: str = Field(..., alias="journalName")
    is_icmje_member: bool = Field(..., alias="isICMJEMember")
    has_trn: bool = Field(..., alias="hasTRN")
    trn: str | None = Field(default=None, description="Trial Registration Number.")
    enrollment_date: str | None = Field(
        default=None,
        alias="enrollmentDate",
        description="Participant enrollment start, YYYY-MM-DD.",
    )
    registration_date: str | None = Field(
        default=None,
        alias="registrationDate",
        description="Date the trial was registered, YYYY-MM-DD.",
    )
    publication_date: date = Field(..., alias="publicationDate")
    impact_factor_quartile: int | None = Field(
        default=None, alias="impactFactorQuartile", ge=1, le=4
    )

    @field_validator("trn", "enrollment_date", "registration_date", mode="before")
    @classmethod
    def _strip_blank(cls, value):
        value = _blank_to_none(value)
        return value.strip() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _trn_requires_flag(self) -> "TrialRecord":
        if not self.has_trn and self.trn is not None:
            raise ValueError("a record without a reported TRN cannot carry a trn value")
        return self


class ComplianceMetrics(BaseModel):
    """Aggregate compliance snapshot derived from a collection of records."""

    model_config = ConfigDict(frozen=True)

    total: int
    with_trn: int
    trn_rate: float
    prospective: int
    retrospective: int
    prospective_rate: float
    icmje_trn_rate: float
    non_icmje_trn_rate: float
    delays: tuple[int, ...] = ()
    # Records that qualified for timing classification.
    timed_records: int = 0
    # Records skipped from timing classification because a date did not parse.
    invalid_date_records: int = 0


class HistogramBin(BaseModel):
    """One bin of the registration delay histogram."""

    model_config = ConfigDict(frozen=True)

    week: int
    count: int = 0


class DocumentAnalysis(BaseModel):
    """Registration metadata extracted from a document by the analysis service.

    The shape is fixed; responses that do not conform are rejected at the
    service boundary.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    has_trn: bool = Field(..., alias="hasTRN")
    trn: str | None = None
    enrollment_mentioned: bool = Field(..., alias="enrollmentMentioned")
    registration_mentioned: bool = Field(..., alias="registrationMentioned")
    extracted_dates: list[str] = Field(default_factory=list, alias="extractedDates")
    analysis: str

    @field_validator("trn", mode="before")
    @classmethod
    def _empty_trn(cls, value):
        return _blank_to_none(value)

    @classmethod
    def fallback(cls) -> "DocumentAnalysis":
        """Return the fixed value reported when analysis fails for any reason."""
        return cls(
            has_trn=False,
            trn=None,
            enrollment_mentioned=False,
            registration_mentioned=False,
            extracted_dates=[],
            analysis=FALLBACK_ANALYSIS_MESSAGE,
        )


class TextDocument(BaseModel):
    """Pasted document text."""

    kind: Literal["text"] = "text"
    text: str = Field(..., min_length=1)


class BinaryDocument(BaseModel):
    """An uploaded document such as a PDF."""

    kind: Literal["binary"] = "binary"
    data: bytes
    media_type: str = Field(..., min_length=1)


DocumentInput = Annotated[Union[TextDocument, BinaryDocument], Field(discriminator="kind")]
