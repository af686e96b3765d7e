from __future__ import annotations

import json
import logging
from typing import Any, Optional

from aiohttp import web

from gatekeeper.core.errors import GatekeeperError, ValidationError
from gatekeeper.core.runtime import Services
from gatekeeper.core.scheduler import sweep_heartbeat

logger = logging.getLogger(__name__)

SERVICES_KEY = web.AppKey("services", Services)

STATUS_BY_KIND = {
    "not_found": 404,
    "conflict": 409,
    "validation": 400,
    "upstream": 502,
    "internal": 500,
}

routes = web.RouteTableDef()


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except GatekeeperError as exc:
        status = STATUS_BY_KIND.get(exc.kind, 500)
        if status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.path, exc)
        return web.json_response({"error": exc.kind, "message": str(exc)}, status=status)


def _services(request: web.Request) -> Services:
    return request.app[SERVICES_KEY]


async def _body(request: web.Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("request body must be valid JSON") from exc


async def _object_body(request: web.Request) -> dict[str, Any]:
    data = await _body(request)
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return data


def _int(data: dict[str, Any], name: str, *, required: bool = True) -> Optional[int]:
    value = data.get(name)
    if value is None:
        if required:
            raise ValidationError(f"{name} is required")
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    return value


def _bool(data: dict[str, Any], name: str) -> bool:
    value = data.get(name)
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be a boolean")
    return value


def _str(data: dict[str, Any], name: str, *, required: bool = True) -> Optional[str]:
    value = data.get(name)
    if value is None:
        if required:
            raise ValidationError(f"{name} is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


async def _flag(request: web.Request, name: str) -> bool:
    """Accept either a bare JSON boolean or an object carrying ``name``."""
    data = await _body(request)
    if isinstance(data, bool):
        return data
    if isinstance(data, dict):
        return _bool(data, name)
    raise ValidationError(f"{name} must be a boolean")


def _account(request: web.Request) -> int:
    return int(request.match_info["account"])


def _query_int(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"query parameter {name} must be an integer") from exc


@routes.get("/health")
async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "sweeps": sweep_heartbeat()})


@routes.post("/entitlements")
async def register(request: web.Request) -> web.Response:
    data = await _object_body(request)
    account_id = _int(data, "account_id")
    plan = _str(data, "plan", required=False)
    entitlement = await _services(request).entitlements.register(account_id, plan)
    return web.json_response(entitlement.to_payload(), status=201)


@routes.get("/entitlements")
async def list_entitlements(request: web.Request) -> web.Response:
    limit = _query_int(request, "limit", 100)
    offset = _query_int(request, "offset", 0)
    items = await _services(request).entitlements.list_all(limit=limit, offset=offset)
    return web.json_response([item.to_payload() for item in items])


@routes.get("/entitlements/expiring")
async def advance_to_grace(request: web.Request) -> web.Response:
    services = _services(request)
    days = _query_int(request, "days", services.cfg.sweep.grace_horizon_days)
    moved = await services.sweeper.advance_to_grace(days)
    return web.json_response({"account_ids": moved})


@routes.get("/entitlements/expired")
async def advance_to_inactive(request: web.Request) -> web.Response:
    revoked = await _services(request).sweeper.advance_to_inactive()
    return web.json_response({"account_ids": revoked})


@routes.get("/entitlements/auto_renew_due")
async def auto_renew_due(request: web.Request) -> web.Response:
    days = _query_int(request, "days", 1)
    due = await _services(request).renewals.list_due(days)
    return web.json_response([item.to_payload() for item in due])


@routes.get(r"/entitlements/{account:\d+}")
async def get_entitlement(request: web.Request) -> web.Response:
    entitlement = await _services(request).entitlements.get(_account(request))
    return web.json_response(entitlement.to_payload())


@routes.patch(r"/entitlements/{account:\d+}/extend")
async def extend(request: web.Request) -> web.Response:
    data = await _object_body(request)
    days = _int(data, "days")
    plan = _str(data, "plan")
    entitlement = await _services(request).entitlements.extend(_account(request), days, plan)
    return web.json_response(entitlement.to_payload())


@routes.patch(r"/entitlements/{account:\d+}/trial")
async def set_trial(request: web.Request) -> web.Response:
    used = await _flag(request, "is_used_trial")
    entitlement = await _services(request).entitlements.set_trial_used(_account(request), used)
    return web.json_response(entitlement.to_payload())


@routes.patch(r"/entitlements/{account:\d+}/ref_bonus")
async def set_ref_bonus(request: web.Request) -> web.Response:
    used = await _flag(request, "is_used_ref_bonus")
    entitlement = await _services(request).entitlements.set_ref_bonus_used(_account(request), used)
    return web.json_response(entitlement.to_payload())


@routes.patch(r"/entitlements/{account:\d+}/pro")
async def set_pro(request: web.Request) -> web.Response:
    enabled = await _flag(request, "is_pro")
    entitlement = await _services(request).entitlements.set_pro(_account(request), enabled)
    return web.json_response(entitlement.to_payload())


@routes.patch(r"/entitlements/{account:\d+}/payment_method")
async def set_payment_method(request: web.Request) -> web.Response:
    data = await _object_body(request)
    method = _str(data, "payment_method_id", required=False)
    entitlement = await _services(request).entitlements.set_payment_method(_account(request), method)
    return web.json_response(entitlement.to_payload())


@routes.post(r"/entitlements/{account:\d+}/auto_renew_attempt")
async def auto_renew_attempt(request: web.Request) -> web.Response:
    data = await _object_body(request)
    success = _bool(data, "success")
    entitlement = await _services(request).renewals.record_attempt(_account(request), success)
    return web.json_response(entitlement.to_payload())


@routes.patch(r"/entitlements/{account:\d+}/auto_renew")
async def toggle_auto_renew(request: web.Request) -> web.Response:
    data = await _object_body(request)
    enable = _bool(data, "auto_renew")
    entitlement = await _services(request).renewals.toggle(
        _account(request),
        enable,
        plan=_str(data, "plan", required=False),
        duration=_int(data, "duration", required=False),
    )
    return web.json_response(entitlement.to_payload())


@routes.post(r"/entitlements/{account:\d+}/limit_override")
async def disable_limit(request: web.Request) -> web.Response:
    override = await _services(request).overrides.disable_limit_temporarily(_account(request))
    return web.json_response(override.to_payload(), status=201)


@routes.post("/referrals")
async def add_referral(request: web.Request) -> web.Response:
    data = await _object_body(request)
    info = await _services(request).referrals.add_referral(_int(data, "parent"), _int(data, "child"))
    return web.json_response(dict(info), status=201)


@routes.get(r"/referrals/{account:\d+}")
async def referral_info(request: web.Request) -> web.Response:
    info = await _services(request).referrals.get_info(_account(request))
    return web.json_response(dict(info))


@routes.post(r"/referrals/{account:\d+}/payed")
async def payed_referral(request: web.Request) -> web.Response:
    count = await _services(request).referrals.increment_payed_refs(_account(request))
    return web.json_response({"account_id": _account(request), "payed_refs": count})


@routes.post("/promos")
async def create_promo(request: web.Request) -> web.Response:
    data = await _object_body(request)
    tariffs = data.get("applicable_tariffs") or []
    if not isinstance(tariffs, list) or not all(isinstance(item, str) for item in tariffs):
        raise ValidationError("applicable_tariffs must be a list of plan names")
    info = await _services(request).promos.create(
        _str(data, "code"),
        discount_percent=_int(data, "discount_percent"),
        applicable_tariffs=tariffs,
        max_uses=_int(data, "max_uses"),
    )
    return web.json_response(dict(info), status=201)


@routes.get("/promos")
async def list_promos(request: web.Request) -> web.Response:
    items = await _services(request).promos.list_all()
    return web.json_response([dict(item) for item in items])


@routes.post("/promos/validate")
async def validate_promo(request: web.Request) -> web.Response:
    data = await _object_body(request)
    result = await _services(request).promos.validate(
        _str(data, "code"),
        _str(data, "tariff", required=False),
        _int(data, "account_id"),
    )
    return web.json_response(dict(result))


@routes.post("/promos/use")
async def use_promo(request: web.Request) -> web.Response:
    data = await _object_body(request)
    result = await _services(request).promos.use(_str(data, "code"), _int(data, "account_id"))
    return web.json_response(dict(result))


@routes.patch("/promos/{code}/deactivate")
async def deactivate_promo(request: web.Request) -> web.Response:
    info = await _services(request).promos.deactivate(request.match_info["code"])
    return web.json_response(dict(info))


def create_app(services: Services) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[SERVICES_KEY] = services
    app.add_routes(routes)
    return app


__all__ = ["SERVICES_KEY", "STATUS_BY_KIND", "create_app", "error_middleware", "routes"]
