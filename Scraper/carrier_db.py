from datetime import datetime

from sqlalchemy import (
    create_engine, Column, Integer, String, Boolean, DateTime, Date, Numeric, Text, JSON,
    ForeignKey, UniqueConstraint, Index,
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship

from tracker_config import DATABASE_URL

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


class Carrier(Base):
    __tablename__ = "carriers"

    id = Column(Integer, primary_key=True, index=True)
    dot_number = Column(String(20), nullable=False, unique=True, index=True)
    legal_name = Column(String(255), nullable=False)
    dba_name = Column(String(255))
    physical_address = Column(Text)
    city = Column(String(100))
    state = Column(String(2))
    phone = Column(String(50))
    email = Column(String(255))
    entity_type = Column(String(100))
    mc_number = Column(String(20))
    usdot_status = Column(String(50))
    operating_status = Column(String(100))

    # --- Ratings and status ---
    safety_rating = Column(String(50))
    safety_rating_date = Column(String(20))
    safety_review_date = Column(String(20))
    insurance_status = Column(String(20))
    authority_status = Column(String(20))
    out_of_service_date = Column(String(20))
    mcs_150_date = Column(String(20))

    # --- Classification and fleet ---
    operation_classification = Column(JSON)
    carrier_operation = Column(JSON)
    cargo_carried = Column(JSON)
    equipment_types = Column(JSON)
    service_areas = Column(JSON)
    vehicle_count = Column(Integer)
    driver_count = Column(Integer)
    total_mileage = Column(Integer)
    years_in_business = Column(Integer)
    interstate_operation = Column(Boolean)
    hazmat_flag = Column(Boolean)
    pc_flag = Column(Boolean)

    # --- Safety history ---
    crash_count = Column(Integer)
    fatal_crashes = Column(Integer)
    injury_crashes = Column(Integer)
    tow_away_crashes = Column(Integer)
    inspection_count = Column(Integer)
    vehicle_inspections = Column(Integer)
    driver_inspections = Column(Integer)
    out_of_service_orders = Column(Integer)
    out_of_service_rate = Column(Integer)

    # --- Insurance ---
    insurance_carrier = Column(String(255))
    insurance_policy_number = Column(String(100))
    insurance_amount = Column(Numeric(12, 2))
    cargo_insurance_amount = Column(Numeric(12, 2))
    insurance_effective_date = Column(Date)
    insurance_expiry_date = Column(Date)
    insurance_last_verified = Column(DateTime)
    financial_responsibility_status = Column(String(100))
    insurance_link = Column(Text)

    # --- Provenance and quality ---
    data_source = Column(String(50), default="manual")
    verified = Column(Boolean)
    verification_date = Column(DateTime)
    last_verified = Column(DateTime)
    trust_score = Column(Integer)
    data_quality_score = Column(Integer, default=50)
    needs_verification = Column(Boolean, default=False)
    api_last_sync = Column(DateTime)
    api_sync_status = Column(String(20), default="never")
    api_error_count = Column(Integer, default=0)

    # --- Safety rating tracking ---
    safety_rating_last_changed = Column(DateTime)
    safety_rating_stability_score = Column(Integer, default=100)
    safety_rating_change_count = Column(Integer, default=0)
    safety_rating_trend = Column(String(20), default="stable")

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now)

    rating_history = relationship("SafetyRatingHistory", back_populates="carrier", cascade="all, delete-orphan")


class SavedCarrier(Base):
    __tablename__ = "saved_carriers"
    __table_args__ = (UniqueConstraint("user_id", "carrier_id"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    carrier_id = Column(Integer, ForeignKey("carriers.id", ondelete="CASCADE"), nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime, default=datetime.now)


class MonitoringAlert(Base):
    __tablename__ = "monitoring_alerts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    carrier_id = Column(Integer, ForeignKey("carriers.id", ondelete="CASCADE"), nullable=False)
    alert_type = Column(String(50), nullable=False)  # safety_rating, insurance, authority, all
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.now)

    carrier = relationship("Carrier")


class ApiSyncLog(Base):
    __tablename__ = "api_sync_log"
    __table_args__ = (Index("idx_api_sync_log_carrier", "carrier_id", "created_at"),)

    id = Column(Integer, primary_key=True, index=True)
    carrier_id = Column(Integer, ForeignKey("carriers.id", ondelete="CASCADE"))
    api_source = Column(String(50), nullable=False)
    sync_type = Column(String(50), nullable=False)  # full_profile, data_update
    old_data = Column(JSON)
    new_data = Column(JSON)
    changes_detected = Column(JSON, default=dict)
    success = Column(Boolean, default=True)
    error_message = Column(Text)
    response_time_ms = Column(Integer)
    created_at = Column(DateTime, default=datetime.now)


class DataRefreshJob(Base):
    __tablename__ = "data_refresh_jobs"

    id = Column(Integer, primary_key=True, index=True)
    job_type = Column(String(50), nullable=False)  # single_carrier, bulk_sync, bulk_scrape, insurance_enrichment
    status = Column(String(20), default="pending")  # pending, running, completed, failed
    carriers_processed = Column(Integer, default=0)
    carriers_updated = Column(Integer, default=0)
    carriers_failed = Column(Integer, default=0)
    errors = Column(JSON, default=list)
    job_metadata = Column("metadata", JSON, default=dict)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.now)


class DataQualityIssue(Base):
    __tablename__ = "data_quality_issues"

    id = Column(Integer, primary_key=True, index=True)
    carrier_id = Column(Integer, ForeignKey("carriers.id", ondelete="CASCADE"))
    issue_type = Column(String(50), nullable=False)  # stale_data, api_error, inconsistent_data, missing_fields
    severity = Column(String(20), nullable=False)
    description = Column(Text, nullable=False)
    field_name = Column(String(100))
    expected_value = Column(Text)
    actual_value = Column(Text)
    resolved = Column(Boolean, default=False)
    resolved_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.now)


class SafetyRatingHistory(Base):
    __tablename__ = "safety_rating_history"

    id = Column(Integer, primary_key=True, index=True)
    carrier_id = Column(Integer, ForeignKey("carriers.id", ondelete="CASCADE"), nullable=False, index=True)
    old_rating = Column(String(50))
    new_rating = Column(String(50), nullable=False)
    change_date = Column(DateTime, default=datetime.now, nullable=False, index=True)
    data_source = Column(String(50), default="fmcsa", nullable=False)
    change_reason = Column(String(100))
    confidence_score = Column(Integer, default=100)
    notes = Column(Text)
    created_at = Column(DateTime, default=datetime.now)

    carrier = relationship("Carrier", back_populates="rating_history")


class InsuranceHistory(Base):
    __tablename__ = "insurance_history"

    id = Column(Integer, primary_key=True, index=True)
    carrier_id = Column(Integer, ForeignKey("carriers.id", ondelete="CASCADE"), nullable=False, index=True)
    old_expiry_date = Column(Date)
    new_expiry_date = Column(Date)
    old_insurance_carrier = Column(String(255))
    new_insurance_carrier = Column(String(255))
    old_policy_number = Column(String(100))
    new_policy_number = Column(String(100))
    change_reason = Column(String(50))  # manual_update, auto_refresh, verification
    changed_at = Column(DateTime, default=datetime.now)


class InsuranceAlert(Base):
    __tablename__ = "insurance_alerts"

    id = Column(Integer, primary_key=True, index=True)
    carrier_id = Column(Integer, ForeignKey("carriers.id", ondelete="CASCADE"), nullable=False, index=True)
    expiry_date = Column(Date, nullable=False, index=True)
    alert_sent_30d = Column(Boolean, default=False)
    alert_sent_15d = Column(Boolean, default=False)
    alert_sent_7d = Column(Boolean, default=False)
    alert_sent_1d = Column(Boolean, default=False)
    last_alert_sent = Column(DateTime)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)
