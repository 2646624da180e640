"""SQLAlchemy ORM models for the relief fund service.

Defines the actors (``Profile``, ``NGO``, ``Merchant``), relief bookkeeping
(``Disaster``, ``Beneficiary``, ``Transaction``, ``Token``,
``OfflineLedgerEntry``) and oversight records (``DuplicateClaim``,
``BillValidation``, ``Complaint``, ``Grievance``, ``AuditLog``).

Columns use portable types (``db.JSON`` instead of JSONB/ARRAY) so the same
models run on PostgreSQL in deployment and SQLite in tests.
"""

from datetime import date, datetime

from sqlalchemy.orm import relationship

from .db import db

ROLES = ("admin", "ngo", "merchant", "citizen")
DISASTER_STATUSES = ("active", "completed", "frozen")
TRANSACTION_STATUSES = ("pending", "completed", "failed", "synced")
VERIFICATION_STATUSES = ("pending", "verified", "rejected")
BILL_STATUSES = ("pending", "valid", "invalid", "requires_review")
COMPLAINT_STATUSES = ("open", "in_progress", "resolved", "closed")
GRIEVANCE_STATUSES = ("pending", "investigating", "resolved", "dismissed")
CLAIM_STATUSES = ("flagged", "resolved", "dismissed")
DONATION_STATUSES = ("pending", "completed", "failed")
VOLUNTEER_STATUSES = ("pending", "contacted", "onboarded", "declined")


class SerializerMixin:
    """Plain ``to_dict`` over the mapped columns (datetimes as ISO strings)."""

    def to_dict(self) -> dict:
        out = {}
        for col in self.__table__.columns:
            val = getattr(self, col.key)
            if isinstance(val, (datetime, date)):
                val = val.isoformat()
            out[col.key] = val
        return out


class Profile(SerializerMixin, db.Model):
    """A person known to the system; citizens hold wallets and receive tokens."""
    __tablename__ = "profiles"
    id = db.Column(db.Integer, primary_key=True)
    # Identifier issued by the external auth provider (opaque here).
    user_ref = db.Column(db.String(128), nullable=True, index=True)
    full_name = db.Column(db.String(255), nullable=True)
    mobile = db.Column(db.String(20), nullable=True, index=True)
    aadhaar_last_four = db.Column(db.String(4), nullable=True, index=True)
    role = db.Column(db.String(16), default="citizen", nullable=False)
    wallet_address = db.Column(db.String(64), unique=True, nullable=True)
    wallet_balance = db.Column(db.Float, default=0.0, nullable=False)
    is_verified = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    beneficiaries = relationship("Beneficiary", back_populates="citizen", cascade="all,delete-orphan")


class Disaster(SerializerMixin, db.Model):
    """A declared disaster with its token budget and per-citizen limit."""
    __tablename__ = "disasters"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    affected_states = db.Column(db.JSON, default=list, nullable=False)
    # "active", "completed" or "frozen"
    status = db.Column(db.String(16), default="active", nullable=False)
    total_tokens_allocated = db.Column(db.Float, default=0.0, nullable=False)
    tokens_distributed = db.Column(db.Float, default=0.0, nullable=False)
    spending_limit_per_user = db.Column(db.Float, default=15000.0, nullable=False)
    start_date = db.Column(db.DateTime, default=datetime.utcnow, nullable=True)
    end_date = db.Column(db.DateTime, nullable=True)
    created_by = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    beneficiaries = relationship("Beneficiary", back_populates="disaster", cascade="all,delete-orphan")


class NGO(SerializerMixin, db.Model):
    """A fund-distributing organization; must be verified before moving funds."""
    __tablename__ = "ngos"
    id = db.Column(db.Integer, primary_key=True)
    user_ref = db.Column(db.String(128), nullable=True)
    ngo_name = db.Column(db.String(255), nullable=False)
    legal_registration_number = db.Column(db.String(128), nullable=False)
    contact_email = db.Column(db.String(255), nullable=False)
    contact_phone = db.Column(db.String(20), nullable=False)
    office_address = db.Column(db.Text, nullable=False)
    bank_name = db.Column(db.String(255), nullable=True)
    bank_account_number = db.Column(db.String(64), nullable=True)
    bank_ifsc = db.Column(db.String(16), nullable=True)
    # "pending", "verified" or "rejected"
    status = db.Column(db.String(16), default="pending", nullable=False)
    rejection_reason = db.Column(db.Text, nullable=True)
    wallet_address = db.Column(db.String(64), unique=True, nullable=True)
    wallet_balance = db.Column(db.Float, default=0.0, nullable=False)
    trust_score = db.Column(db.Float, default=50.0, nullable=False)
    fraud_flags = db.Column(db.Integer, default=0, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Merchant(SerializerMixin, db.Model):
    """A shop that redeems citizen tokens; inactive until approved."""
    __tablename__ = "merchants"
    id = db.Column(db.Integer, primary_key=True)
    user_ref = db.Column(db.String(128), nullable=True)
    full_name = db.Column(db.String(255), nullable=False)
    mobile = db.Column(db.String(20), nullable=False)
    aadhaar_number = db.Column(db.String(12), nullable=False)
    aadhaar_verified = db.Column(db.Boolean, default=False, nullable=False)
    date_of_birth = db.Column(db.String(10), nullable=False)
    shop_name = db.Column(db.String(255), nullable=False)
    shop_address = db.Column(db.Text, nullable=False)
    shop_license = db.Column(db.String(128), nullable=True)
    gst_number = db.Column(db.String(32), nullable=True)
    stock_categories = db.Column(db.JSON, default=list, nullable=False)
    is_active = db.Column(db.Boolean, default=False, nullable=False)
    activation_time = db.Column(db.DateTime, nullable=True)
    wallet_address = db.Column(db.String(64), unique=True, nullable=True)
    trust_score = db.Column(db.Float, default=0.0, nullable=False)
    fraud_flags = db.Column(db.Integer, default=0, nullable=False)
    total_redemptions = db.Column(db.Float, default=0.0, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Beneficiary(SerializerMixin, db.Model):
    """A citizen enrolled for a disaster, with allocated and spent tokens."""
    __tablename__ = "beneficiaries"
    id = db.Column(db.Integer, primary_key=True)
    citizen_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=False)
    disaster_id = db.Column(db.Integer, db.ForeignKey("disasters.id"), nullable=True)
    tokens_allocated = db.Column(db.Float, default=0.0, nullable=False)
    tokens_spent = db.Column(db.Float, default=0.0, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    citizen = relationship("Profile", back_populates="beneficiaries")
    disaster = relationship("Disaster", back_populates="beneficiaries")

    @property
    def balance(self) -> float:
        return float(self.tokens_allocated or 0) - float(self.tokens_spent or 0)


class Transaction(SerializerMixin, db.Model):
    """A token movement between two wallets.

    ``from_type``/``to_type`` are one of government, ngo, citizen, merchant or
    bank. Offline payments replayed by merchants arrive with ``status="synced"``
    and ``is_offline=True``.
    """
    __tablename__ = "transactions"
    id = db.Column(db.Integer, primary_key=True)
    from_wallet = db.Column(db.String(64), nullable=False, index=True)
    from_type = db.Column(db.String(16), nullable=False)
    to_wallet = db.Column(db.String(64), nullable=False, index=True)
    to_type = db.Column(db.String(16), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    purpose = db.Column(db.String(512), nullable=True)
    disaster_id = db.Column(db.Integer, db.ForeignKey("disasters.id"), nullable=True)
    status = db.Column(db.String(16), default="pending", nullable=False)
    transaction_hash = db.Column(db.String(80), nullable=True, index=True)
    is_offline = db.Column(db.Boolean, default=False, nullable=False)
    location = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)


class OfflineLedgerEntry(SerializerMixin, db.Model):
    """Audit copy of a payment a merchant captured while offline."""
    __tablename__ = "offline_ledger"
    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True)
    # Identifier the merchant device generated for the queued entry.
    client_ref = db.Column(db.String(64), nullable=True, index=True)
    citizen_wallet = db.Column(db.String(64), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    local_timestamp = db.Column(db.DateTime, nullable=False)
    qr_signature = db.Column(db.String(64), nullable=False)
    synced = db.Column(db.Boolean, default=False, nullable=False)
    synced_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class Token(SerializerMixin, db.Model):
    """A token grant held by a wallet; frozen during duplicate-claim review."""
    __tablename__ = "tokens"
    id = db.Column(db.Integer, primary_key=True)
    owner_wallet = db.Column(db.String(64), nullable=False, index=True)
    owner_type = db.Column(db.String(16), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    disaster_id = db.Column(db.Integer, db.ForeignKey("disasters.id"), nullable=True)
    purpose = db.Column(db.String(255), nullable=True)
    is_frozen = db.Column(db.Boolean, default=False, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class DuplicateClaim(SerializerMixin, db.Model):
    """Wallets sharing one Aadhaar + mobile identity, awaiting admin review."""
    __tablename__ = "duplicate_claims"
    id = db.Column(db.Integer, primary_key=True)
    aadhaar_hash = db.Column(db.String(128), unique=True, nullable=False)
    wallet_addresses = db.Column(db.JSON, default=list, nullable=False)
    # "flagged", "resolved" or "dismissed"
    status = db.Column(db.String(16), default="flagged", nullable=False)
    notes = db.Column(db.Text, nullable=True)
    flagged_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    reviewed_by = db.Column(db.String(128), nullable=True)


class BillValidation(SerializerMixin, db.Model):
    """An NGO expense bill and the outcome of its AI/admin validation."""
    __tablename__ = "bill_validations"
    id = db.Column(db.Integer, primary_key=True)
    ngo_id = db.Column(db.Integer, db.ForeignKey("ngos.id"), nullable=False)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True)

    file_name = db.Column(db.String(512), nullable=False)
    file_path = db.Column(db.String(1024), nullable=False)
    mime_type = db.Column(db.String(128), nullable=True)
    hash_sha256 = db.Column(db.String(64), nullable=True, index=True)
    amount = db.Column(db.Float, nullable=False)
    vendor_name = db.Column(db.String(255), nullable=True)
    bill_date = db.Column(db.String(10), nullable=True)

    # "pending", "valid", "invalid" or "requires_review"
    ai_validation_status = db.Column(db.String(32), default="pending", nullable=False)
    ai_validation_notes = db.Column(db.Text, nullable=True)
    ai_confidence_score = db.Column(db.Float, nullable=True)
    validated_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Complaint(SerializerMixin, db.Model):
    __tablename__ = "complaints"
    id = db.Column(db.Integer, primary_key=True)
    complainant_id = db.Column(db.String(128), nullable=True)
    complaint_type = db.Column(db.String(64), nullable=False)
    subject = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(16), default="open", nullable=False)
    resolution = db.Column(db.Text, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    resolved_by = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class Grievance(SerializerMixin, db.Model):
    __tablename__ = "grievances"
    id = db.Column(db.Integer, primary_key=True)
    complainant_id = db.Column(db.String(128), nullable=True)
    grievance_type = db.Column(db.String(64), nullable=False)
    description = db.Column(db.Text, nullable=False)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=True)
    ngo_id = db.Column(db.Integer, db.ForeignKey("ngos.id"), nullable=True)
    evidence_urls = db.Column(db.JSON, default=list, nullable=False)
    status = db.Column(db.String(16), default="pending", nullable=False)
    resolution = db.Column(db.Text, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    resolved_by = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class AuditLog(SerializerMixin, db.Model):
    """Append-only record of administrative and financial actions."""
    __tablename__ = "audit_logs"
    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.String(64), nullable=True)
    details = db.Column(db.JSON, nullable=True)
    performed_by = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class Donation(SerializerMixin, db.Model):
    """A public donation, optionally earmarked for one disaster."""
    __tablename__ = "donations"
    id = db.Column(db.Integer, primary_key=True)
    donor_name = db.Column(db.String(255), nullable=True)
    donor_email = db.Column(db.String(255), nullable=True)
    donor_phone = db.Column(db.String(32), nullable=True)
    amount = db.Column(db.Float, nullable=False)
    disaster_id = db.Column(db.Integer, db.ForeignKey("disasters.id", ondelete="SET NULL"), nullable=True, index=True)
    is_anonymous = db.Column(db.Boolean, default=False, nullable=False)
    payment_status = db.Column(db.String(16), default="pending", nullable=False)
    payment_reference = db.Column(db.String(64), nullable=True, unique=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    disaster = relationship("Disaster")


class VolunteerSignup(SerializerMixin, db.Model):
    __tablename__ = "volunteer_signups"
    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    mobile = db.Column(db.String(32), nullable=False)
    city = db.Column(db.String(128), nullable=False)
    state = db.Column(db.String(128), nullable=False)
    availability = db.Column(db.String(64), nullable=True)
    skills = db.Column(db.JSON, default=list, nullable=False)
    status = db.Column(db.String(16), default="pending", nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
