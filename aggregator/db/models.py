"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Provider(Base):
    """Upstream eSIM wholesaler configuration.

    Providers are soft-disabled through ``enabled`` and never deleted.
    """

    __tablename__ = "providers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    slug: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    api_base_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_preferred: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Pricing
    pricing_margin_percent: Mapped[Decimal] = mapped_column(
        Numeric(6, 2), default=Decimal("15.00"), nullable=False
    )
    min_margin_percent: Mapped[Decimal] = mapped_column(
        Numeric(6, 2), default=Decimal("0.00"), nullable=False
    )

    # Failover / sync
    failover_priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)  # lower = tried first
    sync_interval_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    api_rate_limit_per_hour: Mapped[int] = mapped_column(Integer, default=1000, nullable=False)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    packages: Mapped[list["UnifiedPackage"]] = relationship(
        "UnifiedPackage", back_populates="provider"
    )

    __table_args__ = (
        CheckConstraint("pricing_margin_percent >= 0", name="ck_provider_margin_non_negative"),
        CheckConstraint("min_margin_percent >= 0", name="ck_provider_min_margin_non_negative"),
        CheckConstraint("sync_interval_minutes > 0", name="ck_provider_sync_interval_positive"),
        CheckConstraint("api_rate_limit_per_hour > 0", name="ck_provider_rate_limit_positive"),
    )


class Destination(Base):
    """Single-country destination keyed by its internal 2-letter code."""

    __tablename__ = "destinations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False, unique=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Region(Base):
    """Multi-country region (e.g. Europe, Asia) with its member country codes."""

    __tablename__ = "regions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, unique=True)
    countries: Mapped[list] = mapped_column(JSON, default=list, nullable=False)  # ISO2 codes
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class CountryCodeMapping(Base):
    """Maps provider-native country identifiers to internal 2-letter codes."""

    __tablename__ = "country_code_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_code: Mapped[str] = mapped_column(String(128), nullable=False)
    internal_code: Mapped[str] = mapped_column(String(2), nullable=False)
    country_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    code_type: Mapped[str] = mapped_column(String(16), default="iso3", nullable=False)  # iso3, slug, name

    __table_args__ = (
        UniqueConstraint("external_code", "code_type", name="uq_country_mapping_code_type"),
    )


class UnifiedPackage(Base):
    """Provider offer normalized into the customer-facing catalog shape.

    Rows are keyed by (provider_id, provider_package_id) and are marked
    inactive rather than deleted when they disappear upstream.
    """

    __tablename__ = "unified_packages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("providers.id"), nullable=False, index=True
    )
    provider_package_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # Location
    destination_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("destinations.id"), nullable=True, index=True
    )
    region_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("regions.id"), nullable=True, index=True
    )
    country_code: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    coverage: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    location_status: Mapped[str] = mapped_column(
        String(16), default="resolved", nullable=False
    )  # resolved, unresolved
    package_type: Mapped[str] = mapped_column(String(16), default="local", nullable=False)  # local, regional, global

    # Offer
    title: Mapped[str] = mapped_column(Text, nullable=False)
    data_amount: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # display label, e.g. "1GB"
    data_amount_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)  # null when unlimited
    is_unlimited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    validity_days: Mapped[int] = mapped_column(Integer, nullable=False)
    voice_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sms_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Pricing
    wholesale_cost: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    sell_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    price_override: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)

    # Flags
    is_best_price: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Storefront visibility, maintained by auto selection unless an admin pinned it
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    manual_override: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    provider: Mapped["Provider"] = relationship("Provider", back_populates="packages")

    __table_args__ = (
        UniqueConstraint(
            "provider_id", "provider_package_id", name="uq_unified_package_provider_native"
        ),
        Index("ix_unified_packages_active_currency", "active", "currency"),
    )


class BestPriceMark(Base):
    """Winning package for one equivalence group, overwritten by each comparison run."""

    __tablename__ = "best_price_marks"

    group_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    package_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("unified_packages.id"), nullable=False
    )
    destination_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    region_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    member_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    runner_up_delta: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class PriceBracket(Base):
    """Fixed-width price bucket submitted to app stores as an in-app product."""

    __tablename__ = "price_brackets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, index=True)
    step_size: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    bucket_index: Mapped[int] = mapped_column(Integer, nullable=False)
    min_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)  # inclusive
    max_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)  # exclusive

    # Store submission status: pending, success, error
    android_status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    android_sync_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    android_last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    apple_status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    apple_sync_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    apple_last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class SyncRun(Base):
    """Tracks one provider catalog sync and what it processed."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)  # UUID hex
    provider_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("providers.id"), nullable=False, index=True
    )
    trigger: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # 'scheduled' | 'manual'
    status: Mapped[str] = mapped_column(String(20), default="running", nullable=False)  # running, completed, failed, cancelled
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Progress
    pages_fetched: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    offers_seen: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    packages_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    normalization_errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    packages_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    packages_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    packages_deactivated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
