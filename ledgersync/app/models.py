from sqlalchemy import Column, Integer, String, Boolean, DateTime, Date, DECIMAL, Text, ForeignKey, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
from ledgersync.database import Base


class SyncJobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class TransactionSyncStatus(str, enum.Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    SKIPPED = "skipped"


class MerchantMappingType(str, enum.Enum):
    VENDOR = "vendor"
    CUSTOMER = "customer"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    quickbooks_connections = relationship("QuickBooksConnection", back_populates="user")


class StatementFile(Base):
    """Uploaded bank statement; rows are written by the extraction pipeline."""
    __tablename__ = "statement_files"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    filename = Column(String(255), nullable=False)
    uploaded_at = Column(DateTime(timezone=True), server_default=func.now())

    transactions = relationship("StatementTransaction", back_populates="file")


class StatementTransaction(Base):
    __tablename__ = "statement_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    file_id = Column(Integer, ForeignKey("statement_files.id"), nullable=False, index=True)
    transaction_date = Column(Date, nullable=True)
    amount = Column(DECIMAL(15, 2), nullable=True)
    description = Column(String(500))
    normalized_merchant = Column(String(255), index=True)
    category = Column(String(100), index=True)
    subcategory = Column(String(100))
    confidence = Column(Integer)  # extraction confidence 0-100
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    file = relationship("StatementFile", back_populates="transactions")


class QuickBooksConnection(Base):
    __tablename__ = "quickbooks_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "company_id", name="uq_qb_connection_user_company"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Realm identifier scoping every API call
    company_id = Column(String(64), nullable=False)
    company_name = Column(String(255))

    # OAuth tokens (encrypted)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)

    is_active = Column(Boolean, default=True)
    connection_error = Column(Text, nullable=True)
    connected_at = Column(DateTime(timezone=True), server_default=func.now())
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    disconnected_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="quickbooks_connections")
    category_mappings = relationship("CategoryMapping", back_populates="connection")
    merchant_mappings = relationship("MerchantMapping", back_populates="connection")
    sync_jobs = relationship("SyncJob", back_populates="connection")


class CategoryMapping(Base):
    __tablename__ = "qb_category_mappings"
    __table_args__ = (
        UniqueConstraint("connection_id", "category", "subcategory", name="uq_qb_category_mapping"),
    )

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("quickbooks_connections.id"), nullable=False, index=True)
    category = Column(String(100), nullable=False)
    subcategory = Column(String(100), nullable=True)

    qb_account_id = Column(String(64), nullable=False)
    qb_account_name = Column(String(255))
    qb_account_type = Column(String(100))

    confidence = Column(Integer, default=100)
    auto_mapped = Column(Boolean, default=False)
    reasoning = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    connection = relationship("QuickBooksConnection", back_populates="category_mappings")


class MerchantMapping(Base):
    __tablename__ = "qb_merchant_mappings"
    __table_args__ = (
        UniqueConstraint("connection_id", "normalized_merchant", name="uq_qb_merchant_mapping"),
    )

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("quickbooks_connections.id"), nullable=False, index=True)
    normalized_merchant = Column(String(255), nullable=False)
    mapping_type = Column(SQLEnum(MerchantMappingType), nullable=False, default=MerchantMappingType.VENDOR)

    # Exactly one side is populated, matching mapping_type
    qb_vendor_id = Column(String(64), nullable=True)
    qb_vendor_name = Column(String(255), nullable=True)
    qb_customer_id = Column(String(64), nullable=True)
    qb_customer_name = Column(String(255), nullable=True)

    confidence = Column(Integer, default=100)
    auto_created = Column(Boolean, default=False)
    reasoning = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    connection = relationship("QuickBooksConnection", back_populates="merchant_mappings")


class SyncJob(Base):
    __tablename__ = "qb_sync_jobs"
    __table_args__ = (
        UniqueConstraint("connection_id", "file_id", name="uq_qb_sync_job_connection_file"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("quickbooks_connections.id"), nullable=False)
    file_id = Column(Integer, ForeignKey("statement_files.id"), nullable=False)

    status = Column(SQLEnum(SyncJobStatus), nullable=False, default=SyncJobStatus.PENDING)
    total_transactions = Column(Integer, default=0)
    synced_transactions = Column(Integer, default=0)
    failed_transactions = Column(Integer, default=0)
    skipped_transactions = Column(Integer, default=0)

    sync_settings = Column(Text, nullable=True)  # JSON: bank_account_id, min_confidence, ...
    error_log = Column(Text, nullable=True)  # JSON: [{transaction_id, errors}]

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    connection = relationship("QuickBooksConnection", back_populates="sync_jobs")
    file = relationship("StatementFile")
    transaction_syncs = relationship("TransactionSync", back_populates="sync_job", cascade="all, delete-orphan")


class TransactionSync(Base):
    __tablename__ = "qb_transaction_syncs"
    __table_args__ = (
        UniqueConstraint("sync_job_id", "transaction_id", name="uq_qb_transaction_sync"),
    )

    id = Column(Integer, primary_key=True, index=True)
    sync_job_id = Column(Integer, ForeignKey("qb_sync_jobs.id"), nullable=False, index=True)
    transaction_id = Column(Integer, ForeignKey("statement_transactions.id"), nullable=False)

    status = Column(SQLEnum(TransactionSyncStatus), nullable=False, default=TransactionSyncStatus.PENDING)
    qb_transaction_id = Column(String(64), nullable=True)
    qb_transaction_type = Column(String(32), nullable=True)
    qb_link = Column(String(500), nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    synced_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    sync_job = relationship("SyncJob", back_populates="transaction_syncs")
    transaction = relationship("StatementTransaction")
