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
"""Provides a client that extracts registration metadata from trial documents.

The extraction is delegated to the Gemini generateContent API. A call is a
single best-effort attempt: every failure is converted to the fixed fallback
analysis, with a human-readable message returned alongside it.
"""

import base64
import json
import logging
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from .config import Settings
from .models import BinaryDocument, DocumentAnalysis, DocumentInput, TextDocument

logger = logging.getLogger(__name__)

INSTRUCTIONS = """
Analyze the provided clinical trial document (abstract or full PDF paper).
Your goal is to extract the Trial Registration Number (TRN) if present, and any dates related to 'enrollment start' or 'trial registration'.

If this is a full paper, look specifically in the Methods, Design, or footnote sections for registration details.

Return the response in JSON format.
"""

RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "hasTRN": {"type": "BOOLEAN"},
        "trn": {
            "type": "STRING",
            "description": (
                "The alphanumeric trial registration number "
                "(e.g., NCT01234567, ISRCTN12345678). Null if not found."
            ),
        },
        "enrollmentMentioned": {
            "type": "BOOLEAN",
            "description": "Does the text mention when participant enrollment started?",
        },
        "registrationMentioned": {
            "type": "BOOLEAN",
            "description": "Does the text mention when the trial was registered?",
        },
        "extractedDates": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "description": (
                "List of any specific dates (YYYY-MM-DD or Month Year) "
                "found related to study timeline."
            ),
        },
        "analysis": {
            "type": "STRING",
            "description": "A brief 1-sentence summary of the registration status found.",
        },
    },
    "required": [
        "hasTRN",
        "enrollmentMentioned",
        "registrationMentioned",
        "extractedDates",
        "analysis",
    ],
}

_document_adapter: TypeAdapter[DocumentInput] = TypeAdapter(DocumentInput)


class AnalysisError(Exception):
    """Raised internally when a document cannot be analyzed."""


class DocumentAnalyzer:
    """Client for extracting registration metadata from a document."""

    def __init__(
        self, settings: Settings, client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the analyzer with settings and an optional HTTP client."""
        self.settings = settings
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            headers={"User-Agent": "trial-compliance/0.1.0"},
            timeout=settings.request_timeout,
        )

    async def __aenter__(self) -> "DocumentAnalyzer":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if this analyzer created it."""
        if self._owns_client:
            await self.client.aclose()

    def build_request_body(self, document: DocumentInput) -> dict[str, Any]:
        """Build the generateContent payload for a text or binary document."""
        parts: list[dict[str, Any]] = [{"text": INSTRUCTIONS}]
        if isinstance(document, BinaryDocument):
            parts.append(
                {
                    "inlineData": {
                        "mimeType": document.media_type,
                        "data": base64.b64encode(document.data).decode("ascii"),
                    }
                }
            )
        elif isinstance(document, TextDocument):
            parts.append({"text": f'Text Content:\n"{document.text}"'})
        else:
            raise TypeError(f"Unsupported document input: {type(document).__name__}")

        return {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
            },
        }

    async def _request_analysis(self, document: DocumentInput) -> DocumentAnalysis:
        api_key = self.settings.gemini_api_key
        if api_key is None or not api_key.get_secret_value():
            raise AnalysisError("API key not configured")

        response = await self.client.post(
            self.settings.generate_content_url,
            json=self.build_request_body(document),
            headers={"x-goog-api-key": api_key.get_secret_value()},
            timeout=self.settings.request_timeout,
        )
        response.raise_for_status()

        try:
            text = response.json()["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise AnalysisError("No response from the analysis service") from e
        if not text:
            raise AnalysisError("No response from the analysis service")

        return DocumentAnalysis.model_validate_json(text)

    async def analyze_with_error(
        self, document: DocumentInput | dict[str, Any],
    ) -> tuple[DocumentAnalysis, str | None]:
        """Analyze a document, reporting any failure separately from the result.

        Returns:
            The extracted analysis and None on success, or the fallback
            analysis and a human-readable error message on failure.
        """
        document = _document_adapter.validate_python(document)
        try:
            return await self._request_analysis(document), None
        except AnalysisError as e:
            message = str(e)
        except httpx.HTTPStatusError as e:
            message = f"Analysis service returned HTTP {e.response.status_code}"
        except httpx.HTTPError as e:
            message = f"Could not reach the analysis service: {e!r}"
        except (json.JSONDecodeError, ValidationError) as e:
            message = f"Malformed response from the analysis service: {e}"
        except Exception as e:
            # Analysis is best effort; unexpected failures still yield the fallback.
            message = f"Unexpected error during document analysis: {e!r}"

        logger.error("Document analysis failed: %s", message)
        return DocumentAnalysis.fallback(), message

    async def analyze(self, document: DocumentInput | dict[str, Any]) -> DocumentAnalysis:
        """Analyze a document, returning the fallback analysis on any failure."""
        analysis, _ = await self.analyze_with_error(document)
        return analysis
