"""OIDC API Models

Purpose: Response models for the OIDC login endpoints

These models define the public JSON contract. Client secrets and other
provider credentials never appear in them.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ProviderResponse(BaseModel):
    """Enabled OIDC provider as shown on the login page"""

    slug: str = Field(..., description="URL-safe provider identifier", examples=["dex"])
    name: str = Field(..., description="Human-readable provider name", examples=["Dex"])


class IdentityResponse(BaseModel):
    """OIDC identity linked to the current user"""

    provider_slug: str
    provider_name: str
    email: Optional[str] = None
    linked_at: datetime


class ErrorResponse(BaseModel):
    """Structured error response"""

    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")
