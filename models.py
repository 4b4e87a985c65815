"""
Campus Credit Ledger - Database Schema
======================================

Schema for the campus internal-credit ledger:
- Wallets keyed by a client-derived user hash, holding a non-negative point balance
- Append-only transaction log for every settled balance movement
- Task bounties and marketplace purchases with escrowed funds
- Content/transaction reports and compensation-first recovery cases
- Redeem codes with per-user redemption rows
- Consumed request nonces for replay protection

All timestamps are integer epoch seconds. Conversion to client milliseconds
happens in utils.json_serialization.
"""

from enum import Enum
from typing import Optional, Dict, Any
from sqlalchemy import (
    Integer, BigInteger, String, Text, Boolean, JSON,
    UniqueConstraint, Index, CheckConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TransactionType(Enum):
    """Kinds of ledger entries"""
    SYSTEM_REWARD = "system_reward"
    TRANSFER = "transfer"
    TASK_REWARD = "task_reward"
    PRODUCT_PURCHASE = "product_purchase"
    REDEEM = "redeem"
    COMPENSATION = "compensation"
    RECOVERY = "recovery"
    ADMIN_ADJUST = "admin_adjust"


TRANSACTION_TYPE_DISPLAY_NAMES = {
    TransactionType.SYSTEM_REWARD.value: "System reward",
    TransactionType.TRANSFER.value: "Transfer",
    TransactionType.TASK_REWARD.value: "Task reward",
    TransactionType.PRODUCT_PURCHASE.value: "Product purchase",
    TransactionType.REDEEM.value: "Redeem code",
    TransactionType.COMPENSATION.value: "Compensation",
    TransactionType.RECOVERY.value: "Recovery",
    TransactionType.ADMIN_ADJUST.value: "Admin adjustment",
}


class TransactionStatus(Enum):
    """Ledger entry status"""
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskStatus(Enum):
    """Task bounty lifecycle states"""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"  # taken down by moderation


class ProductStatus(Enum):
    """Marketplace listing status"""
    AVAILABLE = "available"
    SOLD_OUT = "sold_out"
    REMOVED = "removed"


class PurchaseStatus(Enum):
    """Purchase escrow lifecycle states"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DELIVERED = "delivered"
    CONFIRMED = "confirmed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class ReportKind(Enum):
    """What a report is filed against"""
    TRANSACTION = "transaction"
    CONTENT = "content"


class ReportTargetType(Enum):
    """Concrete entity a report points at"""
    TRANSACTION = "transaction"
    TASK = "task"
    PRODUCT = "product"


class ReportType(Enum):
    """Appeal (asks for help) vs report (flags misconduct)"""
    APPEAL = "appeal"
    REPORT = "report"


class ReportStatus(Enum):
    """Report review status"""
    PENDING = "pending"
    REVIEWING = "reviewing"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class RecoveryCaseStatus(Enum):
    """Clawback case status"""
    OPEN = "open"
    RECOVERED = "recovered"
    CLOSED = "closed"


def _values(enum_cls) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


# ============================================================================
# CORE MODELS
# ============================================================================

class Wallet(Base):
    """Point wallet; balance is mutated only through services.ledger"""
    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_secret: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    public_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_active_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
    )

    def __repr__(self):
        return f"<Wallet(user_hash={self.user_hash[:12]}..., balance={self.balance})>"


class Transaction(Base):
    """Append-only ledger entry"""
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    from_user_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    to_user_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default=TransactionStatus.PENDING.value, nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extra_data: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    completed_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            f"status IN ({_values(TransactionStatus)})", name="ck_transactions_status"
        ),
        CheckConstraint(
            f"transaction_type IN ({_values(TransactionType)})", name="ck_transactions_type"
        ),
        Index("ix_transactions_from_user", "from_user_hash", "created_at"),
        Index("ix_transactions_to_user", "to_user_hash", "created_at"),
        Index("ix_transactions_status", "status"),
    )

    def __repr__(self):
        return (
            f"<Transaction(tx_id={self.tx_id}, type={self.transaction_type}, "
            f"amount={self.amount}, status={self.status})>"
        )


class Task(Base):
    """Task bounty; the reward is held from the creator until confirmation"""
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    creator_user_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    acceptor_user_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    contact_info: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    reward_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=TaskStatus.OPEN.value, nullable=False)
    tx_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    accepted_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    submitted_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    completed_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        CheckConstraint("reward_amount > 0", name="ck_tasks_reward_positive"),
        CheckConstraint(f"status IN ({_values(TaskStatus)})", name="ck_tasks_status"),
        Index("ix_tasks_status_created", "status", "created_at"),
        Index("ix_tasks_creator", "creator_user_hash"),
        Index("ix_tasks_acceptor", "acceptor_user_hash"),
    )

    def __repr__(self):
        return f"<Task(task_id={self.task_id}, status={self.status}, reward={self.reward_amount})>"


class Product(Base):
    """Marketplace listing"""
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    seller_user_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivery_info: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default=ProductStatus.AVAILABLE.value, nullable=False
    )

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        CheckConstraint("price > 0", name="ck_products_price_positive"),
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        CheckConstraint(f"status IN ({_values(ProductStatus)})", name="ck_products_status"),
        Index("ix_products_status_created", "status", "created_at"),
        Index("ix_products_seller", "seller_user_hash"),
    )

    def __repr__(self):
        return f"<Product(product_id={self.product_id}, price={self.price}, stock={self.stock})>"


class Purchase(Base):
    """Escrowed purchase of a product"""
    __tablename__ = "purchases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    purchase_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    buyer_user_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_user_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    tx_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default=PurchaseStatus.PENDING.value, nullable=False
    )

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    accepted_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    delivered_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    confirmed_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_purchases_amount_positive"),
        CheckConstraint("quantity > 0", name="ck_purchases_quantity_positive"),
        CheckConstraint(f"status IN ({_values(PurchaseStatus)})", name="ck_purchases_status"),
        Index("ix_purchases_buyer", "buyer_user_hash", "created_at"),
        Index("ix_purchases_seller", "seller_user_hash", "created_at"),
        Index("ix_purchases_tx", "tx_id"),
    )

    def __repr__(self):
        return f"<Purchase(purchase_id={self.purchase_id}, status={self.status}, amount={self.amount})>"


class Report(Base):
    """Report or appeal against a transaction or a piece of content"""
    __tablename__ = "reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    target_type: Mapped[str] = mapped_column(String(16), nullable=False)
    target_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_owner_user_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reporter_user_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    report_type: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), default=ReportStatus.PENDING.value, nullable=False
    )
    resolution: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    admin_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    resolved_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        # One report per (target, reporter); enforced by the database
        UniqueConstraint(
            "target_type", "target_id", "reporter_user_hash", name="uq_reports_target_reporter"
        ),
        CheckConstraint(f"kind IN ({_values(ReportKind)})", name="ck_reports_kind"),
        CheckConstraint(f"report_type IN ({_values(ReportType)})", name="ck_reports_type"),
        CheckConstraint(f"status IN ({_values(ReportStatus)})", name="ck_reports_status"),
        Index("ix_reports_status_created", "status", "created_at"),
        Index("ix_reports_reporter", "reporter_user_hash"),
    )

    def __repr__(self):
        return f"<Report(report_id={self.report_id}, kind={self.kind}, status={self.status})>"


class RecoveryCase(Base):
    """Clawback tracking after a victim was compensated from system funds"""
    __tablename__ = "recovery_cases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    report_id: Mapped[str] = mapped_column(String(64), nullable=False)
    victim_user_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    offender_user_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    recovered_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default=RecoveryCaseStatus.OPEN.value, nullable=False
    )
    compensation_tx_id: Mapped[str] = mapped_column(String(64), nullable=False)
    recovery_tx_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    admin_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    recovered_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    closed_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_recovery_cases_amount_positive"),
        CheckConstraint(
            "recovered_amount >= 0 AND recovered_amount <= amount",
            name="ck_recovery_cases_recovered_range",
        ),
        CheckConstraint(
            f"status IN ({_values(RecoveryCaseStatus)})", name="ck_recovery_cases_status"
        ),
        Index("ix_recovery_cases_status", "status", "created_at"),
        Index("ix_recovery_cases_offender", "offender_user_hash"),
    )

    def __repr__(self):
        return f"<RecoveryCase(case_id={self.case_id}, status={self.status}, amount={self.amount})>"


class RedeemCode(Base):
    """Pre-issued credit voucher, stored by keyed digest"""
    __tablename__ = "redeem_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    code_hint: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # None = unlimited
    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        CheckConstraint("value > 0", name="ck_redeem_codes_value_positive"),
        CheckConstraint("used_count >= 0", name="ck_redeem_codes_used_non_negative"),
        CheckConstraint(
            "max_uses IS NULL OR used_count <= max_uses", name="ck_redeem_codes_within_limit"
        ),
    )

    def __repr__(self):
        return f"<RedeemCode(hint={self.code_hint}, used={self.used_count}/{self.max_uses})>"


class RedeemRedemption(Base):
    """At most one redemption per (code, user)"""
    __tablename__ = "redeem_redemptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    redemption_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    user_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    tx_id: Mapped[str] = mapped_column(String(64), nullable=False)
    redeemed_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint("code_hash", "user_hash", name="uq_redeem_redemptions_code_user"),
        Index("ix_redeem_redemptions_user", "user_hash"),
    )


class ConsumedNonce(Base):
    """Signed-request nonces seen inside their validity window"""
    __tablename__ = "consumed_nonces"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    nonce: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_hash", "nonce", name="uq_consumed_nonces_user_nonce"),
        Index("ix_consumed_nonces_expires", "expires_at"),
    )


class Setting(Base):
    """Key/value runtime settings (admin password hash)"""
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
