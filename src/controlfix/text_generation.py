"""
AWS Bedrock text generation for remediation scripts and guidance.

Implements the TextGenerationService contract with Claude on Bedrock. The
boto3 client is synchronous, so each call runs in a worker thread and the
coroutine stays cancellable while it waits.

Usage:
    from controlfix.text_generation import BedrockTextGenerationService

    generator = BedrockTextGenerationService(
        model_id=settings.bedrock_model_id,
        region=settings.aws_region,
    )
    script = await generator.generate_script(finding, "aws_cli")
"""

import asyncio
import json
import re
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from controlfix.errors import TextGenerationError
from controlfix.logging_config import get_logger, log_with_context
from controlfix.models import Finding, PrioritizedFinding

logger = get_logger(__name__)

RETRYABLE_ERROR_CODES = frozenset(
    {
        "ThrottlingException",
        "ServiceUnavailableException",
        "ModelTimeoutException",
        "InternalServerException",
    }
)

_CODE_BLOCK = re.compile(
    r"```(?:bash|sh|shell|powershell|pwsh|hcl|terraform)?\s*\n(.*?)\n```",
    re.DOTALL | re.IGNORECASE,
)

_DIALECT_DESCRIPTIONS = {
    "aws_cli": "a bash script that uses the AWS CLI",
    "bash": "a POSIX bash script",
    "powershell": "a PowerShell script",
}


def extract_script(text: str) -> str:
    """
    Pull the script body out of a model response.

    Returns the first fenced code block, or the whole response when the
    model answered without a fence.

    Raises:
        TextGenerationError: If the response is empty
    """
    match = _CODE_BLOCK.search(text)
    script = match.group(1) if match else text
    script = script.strip()
    if not script:
        raise TextGenerationError("Model returned an empty script", retryable=False)
    return script


def _strip_json_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


class BedrockTextGenerationService:
    """
    Claude on AWS Bedrock behind the TextGenerationService contract.

    Attributes:
        client: boto3 bedrock-runtime client
        model_id: Bedrock model identifier
        max_tokens: Maximum response tokens per request
    """

    def __init__(
        self,
        model_id: str,
        region: str = "us-east-1",
        max_tokens: int = 4000,
        read_timeout_seconds: int = 300,
    ) -> None:
        self.client = boto3.client(
            service_name="bedrock-runtime",
            region_name=region,
            config=Config(
                read_timeout=read_timeout_seconds,
                retries={"max_attempts": 3, "mode": "adaptive"},
            ),
        )
        self.model_id = model_id
        self.max_tokens = max_tokens

    @property
    def enabled(self) -> bool:
        return True

    async def generate_script(self, finding: Finding, dialect: str) -> str:
        """
        Ask the model for a remediation script.

        Args:
            finding: Finding to remediate
            dialect: Script dialect (aws_cli, bash, powershell)

        Returns:
            Script text without markdown fences

        Raises:
            TextGenerationError: If the call fails or returns nothing usable
        """
        prompt = self._script_prompt(finding, dialect)
        text = await self._invoke(prompt, operation="generate_script")
        script = extract_script(text)

        log_with_context(
            logger,
            "info",
            "Generated remediation script",
            finding_id=finding.finding_id,
            dialect=dialect,
            script_lines=script.count("\n") + 1,
        )
        return script

    async def generate_guidance(self, finding: Finding) -> str:
        """Ask the model for a plain-language explanation of the fix."""
        prompt = (
            "You are a cloud compliance engineer. Explain to an operator, in plain "
            "language and at most 200 words, why the following finding matters and "
            "how to fix it by hand. Do not include shell commands.\n\n"
            f"{self._describe(finding)}"
        )
        return (await self._invoke(prompt, operation="generate_guidance")).strip()

    async def prioritize_with_context(
        self,
        findings: list[Finding],
        business_context: str,
    ) -> list[PrioritizedFinding]:
        """
        Rank findings using a free-text business context.

        Returns:
            Ranked findings; IDs the model invented are dropped

        Raises:
            TextGenerationError: If the response is not a JSON array of rankings
        """
        summary = [
            {
                "finding_id": f.finding_id,
                "title": f.title,
                "severity": f.severity.value,
                "resource_id": f.resource_id,
                "controls": f.affected_controls,
                "auto_remediable": f.is_auto_remediable,
            }
            for f in findings
        ]
        prompt = f"""Rank these compliance findings for remediation given the business context.

BUSINESS CONTEXT:
{business_context}

FINDINGS:
{json.dumps(summary, indent=2)}

Respond with only a JSON array, most urgent first:
[{{"finding_id": "...", "rank": 1, "rationale": "..."}}]"""

        text = await self._invoke(prompt, operation="prioritize_with_context")
        try:
            raw = json.loads(_strip_json_fence(text))
            if not isinstance(raw, list):
                raise TypeError("expected a JSON array")
            ranked = [PrioritizedFinding.model_validate(entry) for entry in raw]
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            raise TextGenerationError(
                f"Could not parse prioritization response: {e}",
                retryable=False,
            ) from e

        known = {f.finding_id for f in findings}
        return sorted((r for r in ranked if r.finding_id in known), key=lambda r: r.rank)

    def _script_prompt(self, finding: Finding, dialect: str) -> str:
        language = _DIALECT_DESCRIPTIONS.get(dialect, dialect)
        return f"""You are a principal cloud security engineer.

Write {language} that remediates the compliance finding below.

{self._describe(finding)}

REQUIREMENTS:
- Change only the affected resource
- Be idempotent: running twice must be safe
- For every change, print one line starting with "CHANGE: " describing it
- Do not download anything, escalate privileges or delete resources
- Return the script in a single fenced code block"""

    @staticmethod
    def _describe(finding: Finding) -> str:
        return (
            f"FINDING: {finding.title}\n"
            f"SEVERITY: {finding.severity.value}\n"
            f"RESOURCE: {finding.resource_id} ({finding.resource_type})\n"
            f"CONTROLS: {', '.join(finding.affected_controls) or 'none'}\n"
            f"DESCRIPTION: {finding.description}\n"
            f"RECOMMENDATION: {finding.recommendation}"
        )

    async def _invoke(self, prompt: str, operation: str) -> str:
        body = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.1,
            "top_p": 0.9,
        }

        try:
            response: dict[str, Any] = await asyncio.to_thread(
                self.client.invoke_model,
                modelId=self.model_id,
                body=json.dumps(body),
                contentType="application/json",
                accept="application/json",
            )
            payload = json.loads(response["body"].read())
        except ClientError as e:
            error = e.response.get("Error", {})
            code = error.get("Code", "Unknown")
            request_id = e.response.get("ResponseMetadata", {}).get("RequestId")
            log_with_context(
                logger,
                "error",
                "Bedrock request failed",
                operation=operation,
                error_code=code,
                request_id=request_id,
            )
            raise TextGenerationError(
                f"Bedrock {operation} failed: {error.get('Message', str(e))}",
                error_code=code,
                request_id=request_id,
                retryable=code in RETRYABLE_ERROR_CODES,
            ) from e
        except BotoCoreError as e:
            raise TextGenerationError(f"Bedrock {operation} failed: {e}") from e

        content = payload.get("content") or []
        if not content or "text" not in content[0]:
            raise TextGenerationError(
                f"Bedrock {operation} returned no text content",
                retryable=False,
            )
        return str(content[0]["text"])
