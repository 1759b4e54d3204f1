from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from .models import SyncJobStatus, TransactionSyncStatus, MerchantMappingType


class TokenData(BaseModel):
    email: str
    user_id: Optional[int] = None


# QuickBooks connection

class OAuthInitiateResponse(BaseModel):
    authorization_url: str
    state: str


class ConnectionStatusResponse(BaseModel):
    connected: bool
    company_name: Optional[str] = None
    company_id: Optional[str] = None
    connected_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None
    connection_test: Optional[Dict[str, Any]] = None


# Mappings

class CategoryMappingBase(BaseModel):
    category: str
    subcategory: Optional[str] = None
    qb_account_id: str
    qb_account_name: Optional[str] = None
    qb_account_type: Optional[str] = None
    confidence: int = Field(100, ge=0, le=100)
    reasoning: Optional[str] = None


class CategoryMappingCreate(CategoryMappingBase):
    auto_mapped: bool = False


class CategoryMapping(CategoryMappingBase):
    id: int
    connection_id: int
    auto_mapped: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MerchantMappingBase(BaseModel):
    normalized_merchant: str
    mapping_type: MerchantMappingType = MerchantMappingType.VENDOR
    qb_vendor_id: Optional[str] = None
    qb_vendor_name: Optional[str] = None
    qb_customer_id: Optional[str] = None
    qb_customer_name: Optional[str] = None
    confidence: int = Field(100, ge=0, le=100)
    reasoning: Optional[str] = None


class MerchantMappingCreate(MerchantMappingBase):
    auto_created: bool = False


class MerchantMapping(MerchantMappingBase):
    id: int
    connection_id: int
    auto_created: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MappingStats(BaseModel):
    total_category_mappings: int
    auto_mapped_categories: int
    manual_mapped_categories: int
    avg_category_confidence: int
    total_merchant_mappings: int
    auto_created_vendors: int


class MappingsResponse(BaseModel):
    category_mappings: List[CategoryMapping]
    merchant_mappings: List[MerchantMapping]
    stats: MappingStats


class AutoSuggestRequest(BaseModel):
    type: str = Field(..., pattern="^(categories|merchants)$")
    save: bool = False


class ValidateMappingsRequest(BaseModel):
    file_id: Optional[int] = None
    min_confidence: Optional[int] = Field(None, ge=0, le=100)


class MappingValidation(BaseModel):
    total: int
    valid: int
    unmapped_categories: List[str]
    unmapped_merchants: List[str]
    low_confidence: List[Dict[str, Any]]
    coverage: float
    ready: bool


# Sync jobs

class SyncJobSettings(BaseModel):
    """Per-run options stored on the job."""
    bank_account_id: str
    bank_account_name: Optional[str] = None
    min_confidence: int = Field(70, ge=0, le=100)
    payment_type: str = "Cash"
    class_id: Optional[str] = None
    class_name: Optional[str] = None
    include_original_description: bool = True
    include_file_reference: bool = True
    auto_create_merchants: bool = True


class SyncJobCreate(BaseModel):
    file_id: int
    settings: SyncJobSettings


class TransactionSync(BaseModel):
    id: int
    transaction_id: int
    status: TransactionSyncStatus
    qb_transaction_id: Optional[str] = None
    qb_transaction_type: Optional[str] = None
    qb_link: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    synced_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncJob(BaseModel):
    id: int
    connection_id: int
    file_id: int
    status: SyncJobStatus
    total_transactions: int
    synced_transactions: int
    failed_transactions: int
    skipped_transactions: int
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncJobStatusResponse(SyncJob):
    progress: int
    settings: Optional[Dict[str, Any]] = None
    error_log: List[Dict[str, Any]] = []
    transactions: List[TransactionSync] = []


class SyncResponse(BaseModel):
    status: str
    synced: int
    failed: int
    skipped: int
    errors: List[Dict[str, Any]] = []
    retried: Optional[int] = None
