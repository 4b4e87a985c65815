"""
JSON Serialization Utilities for the credit ledger
Maps stored rows to the client-facing camelCase shape. Storage keeps epoch
seconds; every timestamp leaving the service is converted to milliseconds here.
"""

from decimal import Decimal
from datetime import datetime, date
from typing import Any, Dict, Optional

from models import (
    Wallet, Transaction, Task, Product, Purchase, Report, RecoveryCase, RedeemCode,
    TaskStatus, PurchaseStatus, TRANSACTION_TYPE_DISPLAY_NAMES,
)
from utils.helpers import to_millis


def ensure_json_safe(data: Any) -> Any:
    """
    Recursively convert non-JSON-serializable types to JSON-safe formats

    Conversions:
        - Decimal -> str (preserves precision)
        - datetime/date -> ISO format string
        - dict/list/tuple -> recursively processed
        - other -> str representation
    """
    if data is None:
        return None

    if isinstance(data, (bool, int, float, str)):
        return data

    if isinstance(data, Decimal):
        return str(data)

    if isinstance(data, (datetime, date)):
        return data.isoformat()

    if isinstance(data, dict):
        return {str(key): ensure_json_safe(value) for key, value in data.items()}

    if isinstance(data, (list, tuple)):
        return [ensure_json_safe(item) for item in data]

    return str(data)


def sanitize_for_json_column(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Sanitize a dictionary for storage in a JSON column"""
    if not data:
        return {}
    return ensure_json_safe(data)


def wallet_to_dict(wallet: Wallet) -> Dict[str, Any]:
    # Never expose user_secret
    return {
        "userHash": wallet.user_hash,
        "balance": wallet.balance,
        "hasSecret": bool(wallet.user_secret),
        "createdAt": to_millis(wallet.created_at),
        "lastActiveAt": to_millis(wallet.last_active_at),
    }


def transaction_to_dict(tx: Transaction) -> Dict[str, Any]:
    return {
        "txId": tx.tx_id,
        "typeName": tx.transaction_type,
        "typeDisplayName": TRANSACTION_TYPE_DISPLAY_NAMES.get(tx.transaction_type, tx.transaction_type),
        "fromUserHash": tx.from_user_hash,
        "toUserHash": tx.to_user_hash,
        "amount": tx.amount,
        "status": tx.status,
        "title": tx.title,
        "description": tx.description,
        "metadata": tx.extra_data or {},
        "createdAt": to_millis(tx.created_at),
        "completedAt": to_millis(tx.completed_at),
    }


def task_to_dict(task: Task, viewer_user_hash: Optional[str] = None) -> Dict[str, Any]:
    """Contact info goes to the creator, and to the acceptor once the task left open"""
    is_creator = viewer_user_hash is not None and viewer_user_hash == task.creator_user_hash
    is_acceptor = (
        viewer_user_hash is not None
        and viewer_user_hash == task.acceptor_user_hash
        and task.status != TaskStatus.OPEN.value
    )

    data = {
        "taskId": task.task_id,
        "creatorUserHash": task.creator_user_hash,
        "acceptorUserHash": task.acceptor_user_hash,
        "title": task.title,
        "description": task.description,
        "rewardAmount": task.reward_amount,
        "status": task.status,
        "txId": task.tx_id,
        "createdAt": to_millis(task.created_at),
        "acceptedAt": to_millis(task.accepted_at),
        "submittedAt": to_millis(task.submitted_at),
        "completedAt": to_millis(task.completed_at),
    }
    if is_creator or is_acceptor:
        data["contactInfo"] = task.contact_info
    return data


def product_to_dict(product: Product, include_delivery_info: bool = False) -> Dict[str, Any]:
    data = {
        "productId": product.product_id,
        "sellerUserHash": product.seller_user_hash,
        "title": product.title,
        "description": product.description,
        "price": product.price,
        "stock": product.stock,
        "status": product.status,
        "createdAt": to_millis(product.created_at),
        "updatedAt": to_millis(product.updated_at),
    }
    if include_delivery_info:
        data["deliveryInfo"] = product.delivery_info
    return data


def purchase_to_dict(
    purchase: Purchase,
    viewer_user_hash: Optional[str] = None,
    product: Optional[Product] = None,
) -> Dict[str, Any]:
    data = {
        "purchaseId": purchase.purchase_id,
        "productId": purchase.product_id,
        "buyerUserHash": purchase.buyer_user_hash,
        "sellerUserHash": purchase.seller_user_hash,
        "amount": purchase.amount,
        "quantity": purchase.quantity,
        "txId": purchase.tx_id,
        "status": purchase.status,
        "createdAt": to_millis(purchase.created_at),
        "acceptedAt": to_millis(purchase.accepted_at),
        "deliveredAt": to_millis(purchase.delivered_at),
        "confirmedAt": to_millis(purchase.confirmed_at),
    }
    if product is not None:
        data["productTitle"] = product.title
        delivered = purchase.status in (
            PurchaseStatus.DELIVERED.value,
            PurchaseStatus.CONFIRMED.value,
        )
        if viewer_user_hash == purchase.seller_user_hash or (
            viewer_user_hash == purchase.buyer_user_hash and delivered
        ):
            data["deliveryInfo"] = product.delivery_info
    return data


def report_to_dict(report: Report) -> Dict[str, Any]:
    return {
        "reportId": report.report_id,
        "kind": report.kind,
        "targetType": report.target_type,
        "targetId": report.target_id,
        "targetOwnerUserHash": report.target_owner_user_hash,
        "reporterUserHash": report.reporter_user_hash,
        "type": report.report_type,
        "reason": report.reason,
        "description": report.description,
        "status": report.status,
        "resolution": report.resolution,
        "adminNote": report.admin_note,
        "createdAt": to_millis(report.created_at),
        "resolvedAt": to_millis(report.resolved_at),
    }


def recovery_case_to_dict(case: RecoveryCase) -> Dict[str, Any]:
    return {
        "caseId": case.case_id,
        "reportId": case.report_id,
        "victimUserHash": case.victim_user_hash,
        "offenderUserHash": case.offender_user_hash,
        "amount": case.amount,
        "recoveredAmount": case.recovered_amount,
        "outstandingAmount": case.amount - case.recovered_amount,
        "status": case.status,
        "compensationTxId": case.compensation_tx_id,
        "recoveryTxId": case.recovery_tx_id,
        "adminNote": case.admin_note,
        "createdAt": to_millis(case.created_at),
        "recoveredAt": to_millis(case.recovered_at),
        "closedAt": to_millis(case.closed_at),
    }


def redeem_code_to_dict(code: RedeemCode) -> Dict[str, Any]:
    return {
        "codeHash": code.code_hash,
        "codeHint": code.code_hint,
        "title": code.title,
        "value": code.value,
        "maxUses": code.max_uses,
        "usedCount": code.used_count,
        "enabled": code.enabled,
        "expiresAt": to_millis(code.expires_at),
        "createdAt": to_millis(code.created_at),
    }
