"""
FastAPI server for the campus credit ledger
Wallet, marketplace, task, report, redeem and admin endpoints.

Run with: gunicorn -c gunicorn_conf.py api_server:app
"""

import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from config import Config
from database import Database
from middleware.rate_limiter import RateLimiter, rate_limit
from services.admin_auth_service import AdminAuthService
from services.admin_service import AdminService
from services.admin_statistics import AdminStatisticsService
from services.ledger import Ledger
from services.marketplace_service import MarketplaceService
from services.redeem_service import RedeemCodeEngine
from services.report_resolution import ReportResolutionService
from services.report_service import ReportService
from services.request_authenticator import (
    SIGNATURE_HEADER,
    RequestAuthenticator,
    SignedHeaders,
)
from services.task_service import TaskService
from services.wallet_service import WalletService
from utils.error_handler import error_handler, handle_error
from utils.exceptions import LedgerError, ValidationError
from utils.helpers import normalize_user_hash, parse_query_int
from utils.json_serialization import (
    product_to_dict,
    purchase_to_dict,
    recovery_case_to_dict,
    redeem_code_to_dict,
    report_to_dict,
    task_to_dict,
    transaction_to_dict,
    wallet_to_dict,
)

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

_server_start = time.time()


def _ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


def _list_payload(page: Optional[str], limit: Optional[str], **fields: Any) -> Dict[str, Any]:
    """Signed GET payload as the client builds it: page and limit as numbers, absent filters omitted"""
    payload: Dict[str, Any] = {key: value for key, value in fields.items() if value is not None}
    payload["page"] = parse_query_int(page, 1)
    payload["limit"] = parse_query_int(limit, Config.DEFAULT_PAGE_LIMIT)
    return payload


def _authenticate(request: Request, payload: Mapping[str, Any]) -> str:
    """Verify the signature and burn the nonce in its own committed unit.

    The nonce stays consumed even when the business operation that follows
    fails, so a rejected request cannot be replayed.
    """
    headers = SignedHeaders.from_headers(request.headers)
    with request.app.state.database.session() as db:
        wallet = request.app.state.authenticator.authenticate(db, payload, headers)
        return wallet.user_hash


def _optional_viewer(request: Request, payload: Mapping[str, Any]) -> Optional[str]:
    """Public listings may be signed to unlock owner-only fields; a bad signature gets the public view"""
    if not request.headers.get(SIGNATURE_HEADER):
        return None
    try:
        return _authenticate(request, payload)
    except LedgerError as e:
        logger.info(f"🔓 Serving public listing, signature not accepted: {e.code}")
        return None


def _require_admin(request: Request) -> str:
    return request.app.state.admin_auth.verify_admin_request(request.headers)


def _none_if_all(value: Optional[str]) -> Optional[str]:
    return None if value in (None, "", "all") else value


def create_app(
    database: Optional[Database] = None,
    authenticator: Optional[RequestAuthenticator] = None,
    admin_auth: Optional[AdminAuthService] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """Build the application around explicit collaborators (tests inject their own)"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Starting campus credit ledger API...")
        Config.log_environment_config()
        for problem in Config.validate():
            logger.warning(f"⚠️ CONFIG: {problem}")
        app.state.database.ensure_schema()
        app.state.database.test_connection()
        yield
        logger.info("🛑 Shutting down campus credit ledger API...")
        app.state.database.dispose()

    app = FastAPI(title="Campus Credit Ledger", version="0.1.0", lifespan=lifespan)
    app.state.database = database or Database()
    app.state.authenticator = authenticator or RequestAuthenticator()
    app.state.admin_auth = admin_auth or AdminAuthService()
    app.state.rate_limiter = rate_limiter or RateLimiter()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=Config.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        standard_error = handle_error(exc, {"path": request.url.path, "method": request.method})
        headers = None
        if getattr(exc, "retry_after", None):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(
            status_code=standard_error.http_status,
            content=standard_error.to_response(),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = ValidationError("Request body must be a JSON object")
        standard_error = handle_error(error, {"path": request.url.path, "method": request.method})
        return JSONResponse(status_code=standard_error.http_status, content=standard_error.to_response())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        standard_error = handle_error(exc, {"path": request.url.path, "method": request.method})
        return JSONResponse(status_code=standard_error.http_status, content=standard_error.to_response())

    mutation = [Depends(rate_limit("mutation"))]

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @app.get("/health")
    def health_check(request: Request):
        db_ok = request.app.state.database.test_connection()
        return JSONResponse(
            status_code=200 if db_ok else 503,
            content={
                "status": "ok" if db_ok else "degraded",
                "service": "campus-credit-ledger",
                "environment": Config.CURRENT_ENVIRONMENT,
                "database": "connected" if db_ok else "unavailable",
                "uptime_seconds": round(time.time() - _server_start, 2),
            },
        )

    # ------------------------------------------------------------------
    # Wallets and transactions
    # ------------------------------------------------------------------

    @app.post("/api/wallet/register", dependencies=[Depends(rate_limit("register"))])
    def register_wallet(request: Request, payload: Dict[str, Any] = Body(...)):
        with request.app.state.database.session() as db:
            wallet = WalletService(db).register(
                payload.get("userHash"), payload.get("userSecret"), payload.get("publicKey")
            )
            return _ok(wallet_to_dict(wallet))

    @app.get("/api/wallet/{user_hash}")
    def get_wallet(user_hash: str, request: Request):
        with request.app.state.database.session() as db:
            return _ok(wallet_to_dict(WalletService(db).get_wallet(user_hash)))

    @app.get("/api/wallet/{user_hash}/balance")
    def get_balance(user_hash: str, request: Request):
        with request.app.state.database.session() as db:
            user_hash = normalize_user_hash(user_hash)
            return _ok({"userHash": user_hash, "balance": WalletService(db).get_balance(user_hash)})

    @app.get("/api/wallet/{user_hash}/stats")
    def get_wallet_stats(user_hash: str, request: Request):
        with request.app.state.database.session() as db:
            return _ok(WalletService(db).get_stats(user_hash))

    @app.get("/api/transaction/history/{user_hash}")
    def get_history(user_hash: str, request: Request, page: Optional[str] = None, limit: Optional[str] = None):
        with request.app.state.database.session() as db:
            return _ok(WalletService(db).get_history(user_hash, page, limit))

    @app.get("/api/transaction/{tx_id}")
    def get_transaction(tx_id: str, request: Request):
        with request.app.state.database.session() as db:
            return _ok(transaction_to_dict(Ledger(db).get_transaction(tx_id)))

    @app.post("/api/transaction/transfer", dependencies=mutation)
    def transfer(request: Request, payload: Dict[str, Any] = Body(...)):
        user_hash = _authenticate(request, payload)
        with request.app.state.database.session() as db:
            to_user_hash = normalize_user_hash(payload.get("toUserHash"), "toUserHash")
            tx = Ledger(db).transfer(
                user_hash,
                to_user_hash,
                payload.get("amount"),
                payload.get("title"),
                payload.get("description"),
            )
            return _ok(transaction_to_dict(tx), "Transfer completed")

    @app.post("/api/redeem", dependencies=[Depends(rate_limit("redeem"))])
    def redeem(request: Request, payload: Dict[str, Any] = Body(...)):
        user_hash = _authenticate(request, payload)
        with request.app.state.database.session() as db:
            tx = RedeemCodeEngine(db).redeem(user_hash, payload.get("code"))
            return _ok(transaction_to_dict(tx), "Code redeemed")

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    @app.post("/api/task/create", dependencies=mutation)
    def create_task(request: Request, payload: Dict[str, Any] = Body(...)):
        user_hash = _authenticate(request, payload)
        with request.app.state.database.session() as db:
            task = TaskService(db).create_task(
                user_hash,
                payload.get("title"),
                payload.get("description"),
                payload.get("rewardAmount"),
                payload.get("contactInfo"),
            )
            return _ok(task_to_dict(task, user_hash), "Task created")

    @app.post("/api/task/accept", dependencies=mutation)
    def accept_task(request: Request, payload: Dict[str, Any] = Body(...)):
        user_hash = _authenticate(request, payload)
        with request.app.state.database.session() as db:
            task = TaskService(db).accept_task(user_hash, payload.get("taskId"))
            return _ok(task_to_dict(task, user_hash), "Task accepted")

    @app.post("/api/task/complete", dependencies=mutation)
    def complete_task(request: Request, payload: Dict[str, Any] = Body(...)):
        user_hash = _authenticate(request, payload)
        with request.app.state.database.session() as db:
            task = TaskService(db).handle_task_action(
                user_hash, payload.get("taskId"), payload.get("action") or "confirm"
            )
            return _ok(task_to_dict(task, user_hash))

    @app.get("/api/task/list")
    def list_tasks(
        request: Request,
        status: Optional[str] = None,
        page: Optional[str] = None,
        limit: Optional[str] = None,
        creatorUserHash: Optional[str] = None,
        acceptorUserHash: Optional[str] = None,
    ):
        status = status or "open"
        payload = _list_payload(
            page, limit, status=status,
            creatorUserHash=creatorUserHash or None, acceptorUserHash=acceptorUserHash or None,
        )
        viewer = _optional_viewer(request, payload)
        with request.app.state.database.session() as db:
            return _ok(
                TaskService(db).list_tasks(
                    viewer, status, payload["page"], payload["limit"],
                    creator_user_hash=creatorUserHash or None,
                    acceptor_user_hash=acceptorUserHash or None,
                )
            )

    # ------------------------------------------------------------------
    # Marketplace
    # ------------------------------------------------------------------

    @app.post("/api/product/create", dependencies=mutation)
    def create_product(request: Request, payload: Dict[str, Any] = Body(...)):
        user_hash = _authenticate(request, payload)
        with request.app.state.database.session() as db:
            product = MarketplaceService(db).create_product(
                user_hash,
                payload.get("title"),
                payload.get("description"),
                payload.get("price"),
                payload.get("stock"),
                payload.get("deliveryInfo"),
            )
            return _ok(product_to_dict(product, include_delivery_info=True), "Product created")

    @app.get("/api/product/list")
    def list_products(
        request: Request,
        status: Optional[str] = None,
        page: Optional[str] = None,
        limit: Optional[str] = None,
    ):
        status = status or "available"
        payload = _list_payload(page, limit, status=status)
        viewer = _optional_viewer(request, payload)
        with request.app.state.database.session() as db:
            return _ok(
                MarketplaceService(db).list_products(status, payload["page"], payload["limit"], viewer)
            )

    @app.post("/api/product/purchase", dependencies=mutation)
    def purchase(request: Request, payload: Dict[str, Any] = Body(...)):
        user_hash = _authenticate(request, payload)
        action = payload.get("action") or "create"
        with request.app.state.database.session() as db:
            marketplace = MarketplaceService(db)
            if action == "create":
                purchase = marketplace.create_purchase(
                    user_hash, payload.get("productId"), payload.get("quantity", 1)
                )
                message = "Purchase created"
            else:
                purchase = marketplace.handle_purchase_action(
                    user_hash, payload.get("purchaseId"), action
                )
                message = None
            product = marketplace.get_product(purchase.product_id)
            return _ok(purchase_to_dict(purchase, user_hash, product), message)

    @app.get("/api/product/purchase")
    def list_purchases(
        request: Request,
        action: Optional[str] = None,
        role: Optional[str] = None,
        status: Optional[str] = None,
        page: Optional[str] = None,
        limit: Optional[str] = None,
    ):
        action = action or "list"
        if action != "list":
            raise ValidationError("Only action=list is supported on GET")
        payload = _list_payload(
            page, limit, action=action, role=role or "buyer", status=status or "all"
        )
        user_hash = _authenticate(request, payload)
        with request.app.state.database.session() as db:
            return _ok(
                MarketplaceService(db).list_purchases(
                    user_hash, payload["role"], _none_if_all(status), payload["page"], payload["limit"]
                )
            )

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    @app.post("/api/report/create", dependencies=mutation)
    def create_report(request: Request, payload: Dict[str, Any] = Body(...)):
        user_hash = _authenticate(request, payload)
        kind = payload.get("kind") or ("transaction" if payload.get("txId") else "content")
        with request.app.state.database.session() as db:
            report = ReportService(db).create_report(
                user_hash,
                kind,
                payload.get("type"),
                payload.get("reason"),
                payload.get("description"),
                tx_id=payload.get("txId"),
                target_type=payload.get("targetType"),
                target_id=payload.get("targetId"),
            )
            return _ok(report_to_dict(report), "Report submitted")

    @app.get("/api/report/list")
    def list_my_reports(
        request: Request,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        page: Optional[str] = None,
        limit: Optional[str] = None,
    ):
        payload = _list_payload(
            page, limit, action="list", kind=kind or "all", status=status or "all"
        )
        user_hash = _authenticate(request, payload)
        with request.app.state.database.session() as db:
            return _ok(
                ReportService(db).list_reports(
                    user_hash, _none_if_all(kind), _none_if_all(status), payload["page"], payload["limit"]
                )
            )

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    @app.post("/api/admin/auth", dependencies=[Depends(rate_limit("admin_auth"))])
    def admin_login(request: Request, payload: Dict[str, Any] = Body(...)):
        admin_auth = request.app.state.admin_auth
        with request.app.state.database.session() as db:
            token = admin_auth.login(db, payload.get("password"))
        return _ok({"token": token, "expiresIn": admin_auth.token_ttl_seconds})

    @app.post("/api/admin/password", dependencies=[Depends(rate_limit("admin_auth"))])
    def admin_change_password(request: Request, payload: Dict[str, Any] = Body(...)):
        with request.app.state.database.session() as db:
            request.app.state.admin_auth.change_password(
                db, payload.get("masterSecret"), payload.get("newPassword")
            )
        return _ok({"updated": True})

    @app.get("/api/admin/reports")
    def admin_list_reports(
        request: Request,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        reportId: Optional[str] = None,
        page: Optional[str] = None,
        limit: Optional[str] = None,
    ):
        _require_admin(request)
        with request.app.state.database.session() as db:
            reports = ReportService(db)
            if reportId:
                return _ok(report_to_dict(reports.get_report(reportId)))
            return _ok(reports.list_reports(None, _none_if_all(kind), _none_if_all(status), page, limit))

    @app.post("/api/admin/reports")
    def admin_handle_report(request: Request, payload: Dict[str, Any] = Body(...)):
        _require_admin(request)
        params = {
            key: payload.get(key)
            for key in ("victimUserHash", "offenderUserHash", "amount", "newPrice")
            if key in payload
        }
        with request.app.state.database.session() as db:
            result = ReportResolutionService(db).handle_report(
                payload.get("reportId"), payload.get("action"), payload.get("adminNote"), **params
            )
            return _ok(
                {
                    "report": report_to_dict(result.report),
                    "action": result.action,
                    "transaction": transaction_to_dict(result.transaction) if result.transaction else None,
                    "recoveryCase": (
                        recovery_case_to_dict(result.recovery_case) if result.recovery_case else None
                    ),
                }
            )

    @app.get("/api/admin/recovery")
    def admin_list_recovery(
        request: Request,
        status: Optional[str] = None,
        page: Optional[str] = None,
        limit: Optional[str] = None,
    ):
        _require_admin(request)
        with request.app.state.database.session() as db:
            return _ok(ReportResolutionService(db).list_cases(status, page, limit))

    @app.post("/api/admin/recovery")
    def admin_recovery_action(request: Request, payload: Dict[str, Any] = Body(...)):
        _require_admin(request)
        action = payload.get("action") or "recover"
        with request.app.state.database.session() as db:
            resolution = ReportResolutionService(db)
            if action == "recover":
                case = resolution.recover(
                    payload.get("caseId"),
                    payload.get("adminNote"),
                    allow_partial=bool(payload.get("allowPartial")),
                )
            elif action == "close":
                case = resolution.close_case(payload.get("caseId"), payload.get("adminNote"))
            else:
                raise ValidationError("action must be one of: recover, close")
            return _ok(recovery_case_to_dict(case))

    @app.get("/api/admin/user")
    def admin_get_user(request: Request, userHash: Optional[str] = None):
        _require_admin(request)
        with request.app.state.database.session() as db:
            return _ok(AdminService(db).get_user_overview(userHash))

    @app.post("/api/admin/user")
    def admin_adjust_user(request: Request, payload: Dict[str, Any] = Body(...)):
        _require_admin(request)
        with request.app.state.database.session() as db:
            tx = AdminService(db).adjust_balance(
                payload.get("userHash"), payload.get("delta"), payload.get("reason")
            )
            return _ok(transaction_to_dict(tx), "Balance adjusted")

    @app.post("/api/admin/mint")
    def admin_mint(request: Request, payload: Dict[str, Any] = Body(...)):
        _require_admin(request)
        with request.app.state.database.session() as db:
            tx = AdminService(db).mint(
                payload.get("userHash"),
                payload.get("amount"),
                payload.get("title"),
                payload.get("description"),
            )
            return _ok(transaction_to_dict(tx), "Credits minted")

    @app.get("/api/admin/redeem")
    def admin_list_redeem_codes(request: Request):
        _require_admin(request)
        with request.app.state.database.session() as db:
            return _ok(RedeemCodeEngine(db).list_codes())

    @app.post("/api/admin/redeem")
    def admin_manage_redeem_code(request: Request, payload: Dict[str, Any] = Body(...)):
        _require_admin(request)
        op = payload.get("op") or "create"
        with request.app.state.database.session() as db:
            engine = RedeemCodeEngine(db)
            if op == "create":
                redeem_code = engine.create_code(
                    payload.get("code"),
                    payload.get("value"),
                    payload.get("title"),
                    payload.get("maxUses"),
                    payload.get("expiresAt"),
                )
            elif op == "disable":
                redeem_code = engine.disable_code(payload.get("code"), payload.get("codeHash"))
            else:
                raise ValidationError("op must be one of: create, disable")
            return _ok(redeem_code_to_dict(redeem_code))

    @app.get("/api/admin/stats")
    def admin_stats(request: Request):
        _require_admin(request)
        with request.app.state.database.session() as db:
            stats = AdminStatisticsService.get_statistics(db)
        stats["errors"] = error_handler.get_error_stats()
        return _ok(stats)

    return app


app = create_app()
