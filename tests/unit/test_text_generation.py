"""
Unit tests for BedrockTextGenerationService.

Tests cover client construction, script extraction, prioritization parsing,
and error handling with a mocked Bedrock client.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError  # pyright: ignore[reportMissingTypeStubs]

from controlfix.errors import TextGenerationError
from controlfix.models import Finding
from controlfix.text_generation import BedrockTextGenerationService, extract_script


def _bedrock_response(text: str) -> dict[str, MagicMock]:
    body = MagicMock()
    body.read.return_value = json.dumps({"content": [{"type": "text", "text": text}]})  # pyright: ignore[reportAny]
    return {"body": body}


class TestExtractScript:
    """Tests for extract_script."""

    def test_fenced_block(self) -> None:
        """Test that the first fenced block is returned."""
        text = "Here is the fix:\n```bash\naws s3 ls\necho done\n```\nThanks"

        assert extract_script(text) == "aws s3 ls\necho done"

    def test_unfenced_response(self) -> None:
        """Test that an unfenced response is used whole."""
        assert extract_script("  aws s3 ls  \n") == "aws s3 ls"

    def test_empty_response_raises(self) -> None:
        """Test that an empty script raises."""
        with pytest.raises(TextGenerationError):
            _ = extract_script("```bash\n   \n```")


class TestBedrockInit:
    """Tests for BedrockTextGenerationService initialization."""

    @patch("boto3.client")
    def test_init_creates_bedrock_client(
        self,
        mock_boto_client: MagicMock,
    ) -> None:
        """Test that init creates a bedrock-runtime client in the region."""
        generator = BedrockTextGenerationService(model_id="model-x", region="us-west-2")

        call_kwargs = mock_boto_client.call_args.kwargs
        assert call_kwargs["service_name"] == "bedrock-runtime"
        assert call_kwargs["region_name"] == "us-west-2"
        assert "config" in call_kwargs
        assert generator.model_id == "model-x"
        assert generator.enabled is True


class TestGenerateScript:
    """Tests for generate_script."""

    @patch("boto3.client")
    async def test_generate_script_success(
        self,
        mock_boto_client: MagicMock,
        critical_finding: Finding,
    ) -> None:
        """Test that the script is extracted from the model response."""
        mock_client = MagicMock()
        mock_client.invoke_model.return_value = _bedrock_response(
            "```bash\naws s3api put-bucket-encryption --bucket data-bucket\n```"
        )
        mock_boto_client.return_value = mock_client

        generator = BedrockTextGenerationService(model_id="model-x")
        script = await generator.generate_script(critical_finding, "aws_cli")

        assert script == "aws s3api put-bucket-encryption --bucket data-bucket"
        call_kwargs = mock_client.invoke_model.call_args.kwargs
        assert call_kwargs["modelId"] == "model-x"
        body = json.loads(call_kwargs["body"])  # pyright: ignore[reportAny]
        prompt = body["messages"][0]["content"]  # pyright: ignore[reportAny]
        assert "data-bucket" in prompt
        assert "CHANGE: " in prompt

    @patch("boto3.client")
    async def test_throttling_is_retryable(
        self,
        mock_boto_client: MagicMock,
        critical_finding: Finding,
    ) -> None:
        """Test that throttling surfaces as a retryable TextGenerationError."""
        mock_client = MagicMock()
        mock_client.invoke_model.side_effect = ClientError(
            {
                "Error": {"Code": "ThrottlingException", "Message": "Rate exceeded"},
                "ResponseMetadata": {"RequestId": "req-123"},
            },
            "InvokeModel",
        )
        mock_boto_client.return_value = mock_client

        generator = BedrockTextGenerationService(model_id="model-x")

        with pytest.raises(TextGenerationError) as exc_info:
            _ = await generator.generate_script(critical_finding, "aws_cli")

        assert exc_info.value.retryable is True
        assert exc_info.value.error_code == "ThrottlingException"
        assert exc_info.value.request_id == "req-123"

    @patch("boto3.client")
    async def test_validation_error_not_retryable(
        self,
        mock_boto_client: MagicMock,
        critical_finding: Finding,
    ) -> None:
        """Test that request validation errors are not retried."""
        mock_client = MagicMock()
        mock_client.invoke_model.side_effect = ClientError(
            {"Error": {"Code": "ValidationException", "Message": "bad"}},
            "InvokeModel",
        )
        mock_boto_client.return_value = mock_client

        generator = BedrockTextGenerationService(model_id="model-x")

        with pytest.raises(TextGenerationError) as exc_info:
            _ = await generator.generate_script(critical_finding, "aws_cli")

        assert exc_info.value.retryable is False

    @patch("boto3.client")
    async def test_missing_content_raises(
        self,
        mock_boto_client: MagicMock,
        critical_finding: Finding,
    ) -> None:
        """Test that a response without text content raises."""
        body = MagicMock()
        body.read.return_value = json.dumps({"content": []})  # pyright: ignore[reportAny]
        mock_client = MagicMock()
        mock_client.invoke_model.return_value = {"body": body}
        mock_boto_client.return_value = mock_client

        generator = BedrockTextGenerationService(model_id="model-x")

        with pytest.raises(TextGenerationError, match="no text content"):
            _ = await generator.generate_guidance(critical_finding)


class TestPrioritizeWithContext:
    """Tests for prioritize_with_context."""

    @patch("boto3.client")
    async def test_rankings_sorted_and_unknown_ids_dropped(
        self,
        mock_boto_client: MagicMock,
        critical_finding: Finding,
        medium_manual_finding: Finding,
    ) -> None:
        """Test that rankings are sorted by rank and invented IDs removed."""
        rankings = [
            {"finding_id": critical_finding.finding_id, "rank": 2, "rationale": "encryption"},
            {"finding_id": "made-up", "rank": 1, "rationale": "?"},
            {"finding_id": medium_manual_finding.finding_id, "rank": 1, "rationale": "audit"},
        ]
        mock_client = MagicMock()
        mock_client.invoke_model.return_value = _bedrock_response(
            f"```json\n{json.dumps(rankings)}\n```"
        )
        mock_boto_client.return_value = mock_client

        generator = BedrockTextGenerationService(model_id="model-x")
        ranked = await generator.prioritize_with_context(
            [critical_finding, medium_manual_finding],
            "SOC 2 audit next week",
        )

        assert [r.finding_id for r in ranked] == [
            medium_manual_finding.finding_id,
            critical_finding.finding_id,
        ]

    @patch("boto3.client")
    async def test_unparseable_response_raises(
        self,
        mock_boto_client: MagicMock,
        critical_finding: Finding,
    ) -> None:
        """Test that a non-JSON answer raises TextGenerationError."""
        mock_client = MagicMock()
        mock_client.invoke_model.return_value = _bedrock_response("I would fix the bucket first.")
        mock_boto_client.return_value = mock_client

        generator = BedrockTextGenerationService(model_id="model-x")

        with pytest.raises(TextGenerationError, match="Could not parse"):
            _ = await generator.prioritize_with_context([critical_finding], "context")
