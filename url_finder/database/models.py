# url_finder/database/models.py
"""
SQLAlchemy ORM models for URL Finder persistence.

Models:
    - StorageProvider: Per-provider scheduling state and health flags
    - UrlResult: Immutable record of one discovery run
    - DealLabel: Write-once cache of on-chain deal labels
    - BmsBandwidthResult: Bandwidth measurement job tracking
    - UnifiedVerifiedDeal: Read-only view of the shared deal table

Column types are kept portable (JSON instead of JSONB/TEXT[]) so the same
models run on PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from .base import Base


class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise stores the
    canonical string form in a String(36) column.
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class StorageProvider(Base):
    """
    Scheduling state for one storage provider.

    Rows are created the first time a provider is requested or swept and are
    never deleted. Every discovery run rewrites the discovery schedule and the
    health flags in one UPDATE keyed by ``provider_id``.

    Attributes:
        id: Surrogate key
        provider_id: Bare numeric provider id (``1234`` for ``f01234``), unique
        next_url_discovery_at: When the provider is next due for discovery
        url_discovery_status: in_progress while a run is active, completed after
        last_working_url: Working URL from the latest provider-level run
        next_bms_test_at: When the provider is next due for a bandwidth test
        bms_test_status: in_progress while a BMS job is pending, completed after
        bms_routing_key: Region routing key used for BMS jobs
        last_bms_region_discovery_at: Last time the routing key was refreshed
        is_consistent: Latest run agrees with the prior validity class
        is_reliable: Timeout ratio of the latest run is at most 30%
        url_metadata: Summary of the latest run (counts, label verification)
        cached_http_endpoints: Resolved HTTP base URLs
        endpoints_fetched_at: When cached_http_endpoints was resolved
        peer_id: Cached libp2p peer id
        peer_id_fetched_at: When peer_id was resolved

    Bandwidth-test eligibility:
        is_consistent AND is_reliable AND last_working_url IS NOT NULL
    """

    __tablename__ = "storage_providers"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    provider_id = Column(String(20), nullable=False, unique=True)

    # URL discovery schedule
    next_url_discovery_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    url_discovery_status = Column(String(20), nullable=True)
    last_working_url = Column(Text, nullable=True)

    # Bandwidth test schedule
    next_bms_test_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    bms_test_status = Column(String(20), nullable=True)
    bms_routing_key = Column(String(50), nullable=True)
    last_bms_region_discovery_at = Column(DateTime, nullable=True)

    # Health flags (NULL until the first completed discovery)
    is_consistent = Column(Boolean, nullable=True)
    is_reliable = Column(Boolean, nullable=True)
    url_metadata = Column(JSON, nullable=True)

    # Resolution caches
    cached_http_endpoints = Column(JSON, nullable=True)
    endpoints_fetched_at = Column(DateTime, nullable=True)
    peer_id = Column(String(255), nullable=True)
    peer_id_fetched_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_storage_providers_next_url_discovery", "next_url_discovery_at"),
        Index("ix_storage_providers_next_bms_test", "next_bms_test_at"),
    )

    @property
    def is_bms_eligible(self) -> bool:
        return bool(self.is_consistent and self.is_reliable and self.last_working_url)

    def __repr__(self) -> str:
        return (
            f"<StorageProvider(provider_id={self.provider_id}, "
            f"status={self.url_discovery_status}, next={self.next_url_discovery_at})>"
        )


class UrlResult(Base):
    """
    Outcome of one discovery run. Rows are append-only.

    ``content_length`` holds the observed length of the working URL when the
    run succeeded, otherwise that of the evidence URL. At most one evidence
    URL is stored and only when no working URL was found.

    Attributes:
        provider_id: Bare numeric provider id
        client_id: Bare numeric client id for ProviderClient runs
        result_type: Provider or ProviderClient
        working_url: First valid piece URL found
        retrievability_percent: valid / tested * 100, NULL when nothing was tested
        result_code: ResultCode value
        error_code: ErrorCode value for infrastructure failures
        content_length: Observed Content-Length of the working or evidence URL
        invalid_evidence_url: First reachable-but-invalid URL found
        car_files_percent: Share of valid samples whose deal label carries a payload CID
        large_files_percent: Share of header-valid responses meeting the size threshold
        is_consistent / is_reliable: Provider flags computed for this run
        url_metadata: Counts and label verification for this run
        tested_at: When the run finished
    """

    __tablename__ = "url_results"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    provider_id = Column(String(20), nullable=False)
    client_id = Column(String(20), nullable=True)
    result_type = Column(String(20), nullable=False)

    working_url = Column(Text, nullable=True)
    retrievability_percent = Column(Float, nullable=True)
    result_code = Column(String(50), nullable=False)
    error_code = Column(String(50), nullable=True)
    content_length = Column(BigInteger, nullable=True)
    invalid_evidence_url = Column(Text, nullable=True)

    car_files_percent = Column(Float, nullable=True)
    large_files_percent = Column(Float, nullable=True)

    is_consistent = Column(Boolean, nullable=True)
    is_reliable = Column(Boolean, nullable=True)
    url_metadata = Column(JSON, nullable=True)

    tested_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "retrievability_percent IS NULL OR (retrievability_percent >= 0 AND retrievability_percent <= 100)",
            name="ck_url_results_retrievability_range",
        ),
        CheckConstraint(
            "car_files_percent IS NULL OR (car_files_percent >= 0 AND car_files_percent <= 100)",
            name="ck_url_results_car_files_range",
        ),
        CheckConstraint(
            "large_files_percent IS NULL OR (large_files_percent >= 0 AND large_files_percent <= 100)",
            name="ck_url_results_large_files_range",
        ),
        Index("ix_url_results_provider_tested", "provider_id", "tested_at"),
        Index("ix_url_results_provider_client_tested", "provider_id", "client_id", "tested_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<UrlResult(provider_id={self.provider_id}, client_id={self.client_id}, "
            f"result_code={self.result_code}, retrievability={self.retrievability_percent})>"
        )


class DealLabel(Base):
    """
    Cached on-chain label for a finalized deal.

    Deal proposals never change once published, so entries are inserted once
    and never updated or expired.
    """

    __tablename__ = "deal_labels"

    deal_id = Column(BigInteger, primary_key=True, autoincrement=False)
    piece_cid = Column(String(255), nullable=False)
    label_raw = Column(Text, nullable=True)
    payload_cid = Column(String(255), nullable=True)
    fetched_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<DealLabel(deal_id={self.deal_id}, payload_cid={self.payload_cid})>"


class BmsBandwidthResult(Base):
    """
    One bandwidth measurement job submitted to BMS.

    Inserted with status ``Pending`` right after the job is created, then
    completed by the poller with the metrics reported by BMS (or closed as
    ``Timeout`` after ``settings.bms_job_timeout_hours``).
    """

    __tablename__ = "bms_bandwidth_results"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    provider_id = Column(String(20), nullable=False, index=True)
    bms_job_id = Column(String(64), nullable=False, unique=True)
    url_tested = Column(Text, nullable=False)
    routing_key = Column(String(50), nullable=False)
    worker_count = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="Pending", index=True)

    ping_avg_ms = Column(Float, nullable=True)
    head_avg_ms = Column(Float, nullable=True)
    ttfb_ms = Column(Float, nullable=True)
    download_speed_mbps = Column(Float, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<BmsBandwidthResult(provider_id={self.provider_id}, job={self.bms_job_id}, status={self.status})>"


class UnifiedVerifiedDeal(Base):
    """
    Read-only mapping of the shared deal table populated by the indexer.

    Column names are camelCase in the source table. URL Finder never writes
    here outside of tests.
    """

    __tablename__ = "unified_verified_deal"

    id = Column(Integer, primary_key=True)
    deal_id = Column("dealId", BigInteger, nullable=True)
    claim_id = Column("claimId", BigInteger, nullable=True)
    client_id = Column("clientId", String(20), nullable=True)
    provider_id = Column("providerId", String(20), nullable=True)
    piece_cid = Column("pieceCid", String(255), nullable=True)
    removed = Column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<UnifiedVerifiedDeal(deal_id={self.deal_id}, provider={self.provider_id}, piece={self.piece_cid})>"
