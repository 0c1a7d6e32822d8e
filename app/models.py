"""
Pydantic models for request/response validation.
"""
from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Optional


class ContentView(BaseModel):
    """Projection of an item returned by a successful access."""
    id: str
    type: str  # 'text' or 'file'
    expires_at: datetime
    view_count: int
    is_one_time: bool
    link_name: Optional[str] = None
    content: Optional[str] = None  # text content
    file_locator: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    download_count: Optional[int] = None
    file_url: Optional[str] = None


class ItemSummary(BaseModel):
    """One entry of an owner's link listing."""
    unique_id: str
    type: str
    content: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    expires_at: datetime
    max_views: Optional[int] = None
    is_one_time: bool
    has_password: bool
    view_count: int
    download_count: int
    created_at: datetime
    link_name: Optional[str] = None


class ShareResponse(BaseModel):
    """Response model after creating a share."""
    unique_id: str
    url: str
    expires_at: datetime


class ClaimRequest(BaseModel):
    """Anonymous item ids to attach to the caller."""
    link_ids: List[str] = Field(default_factory=list)


class ClaimResponse(BaseModel):
    claimed_count: int
    claimed_ids: List[str]


class LinkListResponse(BaseModel):
    links: List[ItemSummary]
