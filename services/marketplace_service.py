"""
Marketplace Service - product listings and escrowed purchases

Purchase lifecycle:
    pending -> accepted -> delivered -> confirmed
    pending -> cancelled            (buyer, refunds and restocks)
    accepted/delivered -> disputed  (buyer; settled by an admin report action)

The buyer is debited at creation and the seller is credited only on
confirmation (or an admin release).
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from config import Config
from models import (
    Product, ProductStatus, Purchase, PurchaseStatus,
    TransactionType, TransactionStatus,
)
from services.ledger import Ledger
from utils.escrow_state_machine import (
    Actor,
    PurchaseStateValidator,
    PurchaseTransition,
    apply_status_transition,
)
from utils.exceptions import (
    InvalidStateError,
    NotFoundError,
    OutOfStockError,
    SelfDealingError,
    ValidationError,
)
from utils.helpers import (
    build_page,
    generate_product_id,
    generate_purchase_id,
    normalize_pagination,
    now_seconds,
    require_choice,
    require_non_negative_int,
    require_positive_int,
    require_text,
)
from utils.json_serialization import product_to_dict, purchase_to_dict

logger = logging.getLogger(__name__)

PURCHASE_ACTIONS = {
    "seller_accept": PurchaseTransition.SELLER_ACCEPT,
    "seller_deliver": PurchaseTransition.SELLER_DELIVER,
    "buyer_confirm": PurchaseTransition.BUYER_CONFIRM,
    "buyer_cancel": PurchaseTransition.BUYER_CANCEL,
    "buyer_dispute": PurchaseTransition.BUYER_DISPUTE,
}


class MarketplaceService:
    """Products and purchase escrow"""

    def __init__(self, db: Session):
        self.db = db
        self.ledger = Ledger(db)

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def create_product(
        self,
        seller_user_hash: str,
        title: Any,
        description: Any,
        price: Any,
        stock: Any,
        delivery_info: Any = None,
    ) -> Product:
        title = require_text(title, "title", Config.MAX_TITLE_LENGTH)
        description = require_text(
            description, "description", Config.MAX_DESCRIPTION_LENGTH, required=False
        )
        price = require_positive_int(price, "price")
        stock = require_non_negative_int(stock, "stock")
        delivery_info = require_text(
            delivery_info, "deliveryInfo", Config.MAX_DELIVERY_INFO_LENGTH, required=False
        )
        self.ledger.get_wallet(seller_user_hash)

        now = now_seconds()
        product = Product(
            product_id=generate_product_id(),
            seller_user_hash=seller_user_hash,
            title=title,
            description=description,
            delivery_info=delivery_info,
            price=price,
            stock=stock,
            status=(ProductStatus.AVAILABLE if stock > 0 else ProductStatus.SOLD_OUT).value,
            created_at=now,
            updated_at=now,
        )
        self.db.add(product)
        self.db.flush()
        logger.info(f"✅ PRODUCT_CREATED {product.product_id} price={price} stock={stock}")
        return product

    def get_product(self, product_id: str) -> Product:
        product = self.db.execute(
            select(Product).where(Product.product_id == product_id)
        ).scalar_one_or_none()
        if product is None:
            raise NotFoundError("Product not found", {"productId": product_id})
        return product

    def list_products(
        self,
        status: Optional[str] = ProductStatus.AVAILABLE.value,
        page: Any = None,
        limit: Any = None,
        viewer_user_hash: Optional[str] = None,
    ) -> Dict[str, Any]:
        page, limit = normalize_pagination(page, limit)
        conditions = []
        if status and status != "all":
            require_choice(status, "status", [s.value for s in ProductStatus])
            conditions.append(Product.status == status)

        total = self.db.execute(
            select(func.count()).select_from(Product).where(*conditions)
        ).scalar_one()
        rows = self.db.execute(
            select(Product)
            .where(*conditions)
            .order_by(Product.created_at.desc(), Product.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        ).scalars().all()

        data = [
            product_to_dict(p, include_delivery_info=viewer_user_hash == p.seller_user_hash)
            for p in rows
        ]
        return build_page(data, total, page, limit)

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    def create_purchase(self, buyer_user_hash: str, product_id: Any, quantity: Any = 1) -> Purchase:
        """Reserve stock, escrow the buyer's funds and open a pending purchase"""
        if not isinstance(product_id, str) or not product_id:
            raise ValidationError("productId is required")
        quantity = require_positive_int(quantity, "quantity")

        product = self.get_product(product_id)
        if product.seller_user_hash == buyer_user_hash:
            raise SelfDealingError("Cannot buy your own product")
        if product.status == ProductStatus.REMOVED.value:
            raise InvalidStateError("Product is not available", {"status": product.status})

        now = now_seconds()
        remaining = Product.stock - quantity
        reserved = self.db.execute(
            update(Product)
            .where(
                Product.product_id == product_id,
                Product.status == ProductStatus.AVAILABLE.value,
                Product.stock >= quantity,
            )
            .values(
                stock=remaining,
                status=case(
                    (remaining == 0, ProductStatus.SOLD_OUT.value),
                    else_=Product.status,
                ),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if reserved.rowcount == 0:
            self.db.refresh(product)
            if product.status == ProductStatus.REMOVED.value:
                raise InvalidStateError("Product is not available", {"status": product.status})
            raise OutOfStockError(
                "Insufficient stock", {"stock": product.stock, "requested": quantity}
            )
        self.db.expire(product)

        amount = product.price * quantity
        # Raises InsufficientBalanceError; the rollback also restores the stock
        self.ledger.debit(buyer_user_hash, amount, now)

        purchase_id = generate_purchase_id()
        tx = self.ledger.record_transaction(
            TransactionType.PRODUCT_PURCHASE,
            amount,
            f"Purchase: {product.title}",
            from_user_hash=buyer_user_hash,
            to_user_hash=product.seller_user_hash,
            metadata={"purchaseId": purchase_id, "productId": product_id, "quantity": quantity},
            status=TransactionStatus.PENDING,
            now=now,
        )
        purchase = Purchase(
            purchase_id=purchase_id,
            product_id=product_id,
            buyer_user_hash=buyer_user_hash,
            seller_user_hash=product.seller_user_hash,
            amount=amount,
            quantity=quantity,
            tx_id=tx.tx_id,
            status=PurchaseStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        self.db.add(purchase)
        self.db.flush()
        logger.info(
            f"🛒 PURCHASE_CREATED {purchase_id}: product={product_id} qty={quantity} amount={amount}"
        )
        return purchase

    def get_purchase(self, purchase_id: Any) -> Purchase:
        if not isinstance(purchase_id, str) or not purchase_id:
            raise ValidationError("purchaseId is required")
        purchase = self.db.execute(
            select(Purchase).where(Purchase.purchase_id == purchase_id)
        ).scalar_one_or_none()
        if purchase is None:
            raise NotFoundError("Purchase not found", {"purchaseId": purchase_id})
        return purchase

    def get_purchase_by_tx(self, tx_id: str) -> Optional[Purchase]:
        return self.db.execute(
            select(Purchase).where(Purchase.tx_id == tx_id)
        ).scalar_one_or_none()

    def handle_purchase_action(self, user_hash: str, purchase_id: Any, action: Any) -> Purchase:
        """Dispatch a buyer/seller action by name"""
        transition = PURCHASE_ACTIONS.get(action)
        if transition is None:
            raise ValidationError(f"action must be one of: {', '.join(PURCHASE_ACTIONS)}")
        purchase = self.get_purchase(purchase_id)
        actor = PurchaseStateValidator.actor_for(purchase, user_hash)
        return self.transition_purchase(purchase, transition, actor)

    def transition_purchase(
        self,
        purchase: Purchase,
        transition: PurchaseTransition,
        actor: Optional[Actor],
    ) -> Purchase:
        rule = PurchaseStateValidator.validate(transition, purchase.status, actor)
        now = now_seconds()
        fields: Dict[str, Any] = {"updated_at": now}
        if transition == PurchaseTransition.SELLER_ACCEPT:
            fields["accepted_at"] = now
        elif transition == PurchaseTransition.SELLER_DELIVER:
            fields["delivered_at"] = now
        elif transition in (PurchaseTransition.BUYER_CONFIRM, PurchaseTransition.RELEASE_ESCROW):
            fields["confirmed_at"] = now

        purchase_id = purchase.purchase_id
        apply_status_transition(self.db, Purchase, Purchase.purchase_id, purchase_id, rule, **fields)

        if transition in (PurchaseTransition.BUYER_CONFIRM, PurchaseTransition.RELEASE_ESCROW):
            self._release_to_seller(purchase, now)
        elif transition in (PurchaseTransition.BUYER_CANCEL, PurchaseTransition.REFUND_ESCROW):
            self._refund_to_buyer(purchase, now, restock=transition == PurchaseTransition.BUYER_CANCEL)

        return self.get_purchase(purchase_id)

    def _release_to_seller(self, purchase: Purchase, now: int) -> None:
        self.ledger.credit(purchase.seller_user_hash, purchase.amount, now)
        self.ledger.settle_pending_transaction(purchase.tx_id, TransactionStatus.COMPLETED, now)
        logger.info(f"✅ ESCROW_RELEASED {purchase.purchase_id} -> seller amount={purchase.amount}")

    def _refund_to_buyer(self, purchase: Purchase, now: int, restock: bool) -> None:
        self.ledger.credit(purchase.buyer_user_hash, purchase.amount, now)
        self.ledger.settle_pending_transaction(purchase.tx_id, TransactionStatus.CANCELLED, now)
        if restock:
            self.db.execute(
                update(Product)
                .where(Product.product_id == purchase.product_id)
                .values(
                    stock=Product.stock + purchase.quantity,
                    status=case(
                        (Product.status == ProductStatus.SOLD_OUT.value, ProductStatus.AVAILABLE.value),
                        else_=Product.status,
                    ),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        logger.info(f"↩️ ESCROW_REFUNDED {purchase.purchase_id} -> buyer amount={purchase.amount}")

    def list_purchases(
        self,
        user_hash: str,
        role: Any = "buyer",
        status: Any = None,
        page: Any = None,
        limit: Any = None,
    ) -> Dict[str, Any]:
        role = require_choice(role, "role", ["buyer", "seller"])
        page, limit = normalize_pagination(page, limit)
        owner_column = Purchase.buyer_user_hash if role == "buyer" else Purchase.seller_user_hash
        conditions = [owner_column == user_hash]
        if status and status != "all":
            require_choice(status, "status", [s.value for s in PurchaseStatus])
            conditions.append(Purchase.status == status)

        total = self.db.execute(
            select(func.count()).select_from(Purchase).where(*conditions)
        ).scalar_one()
        rows = self.db.execute(
            select(Purchase, Product)
            .join(Product, Product.product_id == Purchase.product_id)
            .where(*conditions)
            .order_by(Purchase.created_at.desc(), Purchase.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        ).all()

        data = [purchase_to_dict(purchase, user_hash, product) for purchase, product in rows]
        return build_page(data, total, page, limit)
