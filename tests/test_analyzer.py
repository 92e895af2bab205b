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

import base64
import json

import httpx
import pytest
from pytest_httpx import HTTPXMock

from trial_compliance.analyzer import DocumentAnalyzer
from trial_compliance.config import Settings
from trial_compliance.models import BinaryDocument, DocumentAnalysis, TextDocument

pytestmark = pytest.mark.unit

ANALYSIS_PAYLOAD = {
    "hasTRN": True,
    "trn": "NCT01234567",
    "enrollmentMentioned": True,
    "registrationMentioned": True,
    "extractedDates": ["2016-07-01", "June 2016"],
    "analysis": "The trial reports NCT01234567 and was registered before enrollment.",
}


def gemini_envelope(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}], "role": "model"}}]}


@pytest.fixture
def mock_settings() -> Settings:
    """Fixture for settings with fake credentials and endpoint."""
    return Settings(
        gemini_api_key="test-key",
        gemini_base_url="https://gemini.test/v1beta",
        gemini_model="test-model",
    )


@pytest.mark.asyncio
async def test_analyze_text_happy_path(mock_settings: Settings, httpx_mock: HTTPXMock):
    """
    Tests that a text document is sent with the instructions and the
    structured response is parsed into a DocumentAnalysis.
    """
    httpx_mock.add_response(
        method="POST",
        url="https://gemini.test/v1beta/models/test-model:generateContent",
        match_headers={"x-goog-api-key": "test-key"},
        json=gemini_envelope(json.dumps(ANALYSIS_PAYLOAD)),
    )

    async with DocumentAnalyzer(settings=mock_settings) as analyzer:
        analysis, error = await analyzer.analyze_with_error(
            TextDocument(text="Registered at ClinicalTrials.gov (NCT01234567).")
        )

    assert error is None
    assert analysis.has_trn is True
    assert analysis.trn == "NCT01234567"
    assert analysis.extracted_dates == ["2016-07-01", "June 2016"]

    request = httpx_mock.get_request()
    body = json.loads(request.content)
    parts = body["contents"][0]["parts"]
    assert "Trial Registration Number" in parts[0]["text"]
    assert parts[1]["text"] == 'Text Content:\n"Registered at ClinicalTrials.gov (NCT01234567)."'
    assert body["generationConfig"]["responseMimeType"] == "application/json"


@pytest.mark.asyncio
async def test_analyze_binary_document_is_inlined(mock_settings: Settings, httpx_mock: HTTPXMock):
    httpx_mock.add_response(json=gemini_envelope(json.dumps(ANALYSIS_PAYLOAD)))

    async with DocumentAnalyzer(settings=mock_settings) as analyzer:
        analysis = await analyzer.analyze(
            BinaryDocument(data=b"%PDF-1.4 fake", media_type="application/pdf")
        )

    assert analysis.trn == "NCT01234567"
    body = json.loads(httpx_mock.get_request().content)
    inline = body["contents"][0]["parts"][1]["inlineData"]
    assert inline["mimeType"] == "application/pdf"
    assert base64.b64decode(inline["data"]) == b"%PDF-1.4 fake"


@pytest.mark.asyncio
async def test_analyze_accepts_tagged_dict(mock_settings: Settings, httpx_mock: HTTPXMock):
    httpx_mock.add_response(json=gemini_envelope(json.dumps(ANALYSIS_PAYLOAD)))

    async with DocumentAnalyzer(settings=mock_settings) as analyzer:
        analysis = await analyzer.analyze({"kind": "text", "text": "NCT01234567"})

    assert analysis.has_trn is True


@pytest.mark.asyncio
async def test_network_error_returns_fallback(mock_settings: Settings, httpx_mock: HTTPXMock):
    """A transport failure yields exactly the fallback analysis plus a message."""
    httpx_mock.add_exception(httpx.ConnectError("connection refused"))

    async with DocumentAnalyzer(settings=mock_settings) as analyzer:
        analysis, error = await analyzer.analyze_with_error(TextDocument(text="abstract"))

    assert analysis == DocumentAnalysis.fallback()
    assert analysis.model_dump(by_alias=True) == {
        "hasTRN": False,
        "trn": None,
        "enrollmentMentioned": False,
        "registrationMentioned": False,
        "extractedDates": [],
        "analysis": "Failed to analyze document due to an error.",
    }
    assert "Could not reach" in error


@pytest.mark.asyncio
async def test_http_error_status_returns_fallback(mock_settings: Settings, httpx_mock: HTTPXMock):
    httpx_mock.add_response(status_code=403, json={"error": {"message": "denied"}})

    async with DocumentAnalyzer(settings=mock_settings) as analyzer:
        analysis, error = await analyzer.analyze_with_error(TextDocument(text="abstract"))

    assert analysis == DocumentAnalysis.fallback()
    assert "403" in error


@pytest.mark.parametrize(
    "envelope",
    [
        {"candidates": []},
        {"promptFeedback": {"blockReason": "SAFETY"}},
        gemini_envelope(""),
        gemini_envelope("not json"),
        gemini_envelope(json.dumps({"hasTRN": "perhaps"})),
        gemini_envelope(json.dumps({"hasTRN": True, "trn": "NCT1"})),
    ],
)
@pytest.mark.asyncio
async def test_malformed_response_returns_fallback(
    mock_settings: Settings, httpx_mock: HTTPXMock, envelope
):
    """
    Tests that responses not conforming to the fixed schema are rejected.
    """
    httpx_mock.add_response(json=envelope)

    async with DocumentAnalyzer(settings=mock_settings) as analyzer:
        analysis, error = await analyzer.analyze_with_error(TextDocument(text="abstract"))

    assert analysis == DocumentAnalysis.fallback()
    assert error


@pytest.mark.asyncio
async def test_missing_api_key_returns_fallback_without_request():
    """No request is sent when credentials are missing."""

    def handler(request: httpx.Request):
        raise AssertionError("no request expected")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        analyzer = DocumentAnalyzer(settings=Settings(gemini_api_key=None), client=client)
        analysis, error = await analyzer.analyze_with_error(TextDocument(text="abstract"))

    assert analysis == DocumentAnalysis.fallback()
    assert error == "API key not configured"


@pytest.mark.asyncio
async def test_injected_client_is_left_open(mock_settings: Settings):
    def handler(request: httpx.Request):
        return httpx.Response(200, json=gemini_envelope(json.dumps(ANALYSIS_PAYLOAD)))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        async with DocumentAnalyzer(settings=mock_settings, client=client) as analyzer:
            analysis = await analyzer.analyze(TextDocument(text="abstract"))
        assert not client.is_closed

    assert analysis.trn == "NCT01234567"
