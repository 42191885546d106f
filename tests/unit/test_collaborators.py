"""
Unit tests for the null collaborator implementations.
"""

import pytest

from controlfix.collaborators import NullDomainRemediationService, NullTextGenerationService
from controlfix.errors import ControlFixError, DomainServiceError, TextGenerationError
from controlfix.models import Finding


class TestNullDomainRemediationService:
    """Tests for NullDomainRemediationService."""

    async def test_never_claims(self, critical_finding: Finding) -> None:
        """Test that no finding is claimed."""
        assert await NullDomainRemediationService().can_auto_remediate(critical_finding) is False

    async def test_calls_raise_domain_error(self, critical_finding: Finding) -> None:
        """Test that planning and executing raise a non-retryable ControlFixError."""
        service = NullDomainRemediationService()

        with pytest.raises(DomainServiceError) as exc_info:
            _ = await service.build_plan(critical_finding)
        with pytest.raises(DomainServiceError):
            _ = await service.execute({}, dry_run=True)

        assert isinstance(exc_info.value, ControlFixError)
        assert exc_info.value.retryable is False


class TestNullTextGenerationService:
    """Tests for NullTextGenerationService."""

    async def test_disabled(self, critical_finding: Finding) -> None:
        """Test that the service reports itself disabled and raises on use."""
        service = NullTextGenerationService()

        assert service.enabled is False
        with pytest.raises(TextGenerationError):
            _ = await service.generate_script(critical_finding, "bash")
