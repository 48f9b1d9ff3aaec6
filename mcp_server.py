"""HTTP surface for the gateway: the MCP JSON-RPC endpoint plus the REST
routes that serve stored resources and permission settings."""
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from auth import require_gateway_auth, user_id_from_claims
from credentials import EncryptedFileCredentialProvider
from errors import ResourceNotFound, StorageUnavailable
from gateway import Gateway, default_registry
from pagination import CursorCodec
from permissions import PERMISSION_LEVEL_NAMES, PermissionEngine, create_permission_store
from resource_store import create_resource_store, resource_id_from_uri
from utils import MCP_PROTOCOL_VERSION, SERVER_NAME, SERVER_VERSION, _rpc_error, _rpc_result, _text_content, logger, safe_dumps

_gateway: Optional[Gateway] = None


def get_gateway() -> Gateway:
    global _gateway
    if _gateway is None:
        registry = default_registry()
        _gateway = Gateway(
            registry=registry,
            permissions=PermissionEngine(create_permission_store(), registry),
            credentials=EncryptedFileCredentialProvider(),
            resources=create_resource_store(),
            cursors=CursorCodec(),
        )
        logger.info("Gateway ready with %s tools in %s categories", len(registry), len(registry.categories()))
    return _gateway


def current_user(payload: Dict = Depends(require_gateway_auth)) -> str:
    return user_id_from_claims(payload)


def _initialize_payload():
    return {
        "protocolVersion": MCP_PROTOCOL_VERSION,
        "capabilities": {
            "tools": {"listChanged": False},
            "resources": {"listChanged": False, "subscribe": False},
            "prompts": {"listChanged": False},
            "logging": {},
        },
        "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
    }


def _tool_content(result: Dict[str, Any]) -> Dict[str, Any]:
    if result.get("isError"):
        return {
            "isError": True,
            "content": [{"type": "text", "text": safe_dumps({"error": result.get("error")})}],
            "metadata": result.get("metadata") or {},
        }
    image = result.get("inlineImage")
    if image:
        described = {k: v for k, v in result.items() if k != "inlineImage"}
        wrapped = _text_content(described)
        wrapped["content"].append({"type": "image", "data": image["data"], "mimeType": image["mimeType"]})
        return wrapped
    return _text_content(result)


router = APIRouter()


@router.get("/healthz")
def gateway_healthz():
    return {"status": "ok", "service": SERVER_NAME}


@router.post("/mcp")
async def handle_mcp_request(
    request: Request,
    user_id: str = Depends(current_user),
    gateway: Gateway = Depends(get_gateway),
):
    """JSON-RPC 2.0 endpoint exposing the two meta-tools."""
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content=_rpc_error(None, -32700, "Parse error: invalid JSON body"))
    if not isinstance(body, dict):
        return JSONResponse(status_code=400, content=_rpc_error(None, -32600, "Invalid request"))

    rpc_id = body.get("id")
    method = body.get("method")
    params = body.get("params") or {}

    if rpc_id is None and isinstance(method, str) and method.startswith("notifications/"):
        return Response(status_code=202)

    if not isinstance(params, dict):
        return _rpc_error(rpc_id, -32602, "Invalid params: params must be an object")

    if method == "initialize":
        return _rpc_result(rpc_id, _initialize_payload())

    elif method == "ping":
        return _rpc_result(rpc_id, {})

    elif method == "tools/list":
        return _rpc_result(rpc_id, {"tools": gateway.list_tools()})

    elif method == "tools/call":
        name = params.get("name")
        args = params.get("arguments")
        if not isinstance(name, str) or not name:
            return _rpc_error(rpc_id, -32602, "Invalid params: tool name is required")
        result = await gateway.execute_tool(user_id, name, args)
        return _rpc_result(rpc_id, _tool_content(result))

    elif method == "resources/list":
        # Resources are handed out per call as URIs; they are not enumerable
        return _rpc_result(rpc_id, {"resources": []})

    elif method == "resources/read":
        uri = params.get("uri")
        resource_id = resource_id_from_uri(uri) if isinstance(uri, str) else None
        if not resource_id:
            return _rpc_error(rpc_id, -32602, "Invalid params: uri must be a resource URI")
        try:
            stored = await gateway.resources.retrieve(resource_id, owner_user_id=user_id)
        except ResourceNotFound as exc:
            return _rpc_error(rpc_id, -32002, exc.message, {"uri": uri})
        except StorageUnavailable as exc:
            return _rpc_error(rpc_id, -32603, exc.message)
        return _rpc_result(rpc_id, {
            "contents": [{"uri": uri, "mimeType": "application/json", "text": safe_dumps(stored.data)}]
        })

    elif method == "prompts/list":
        return _rpc_result(rpc_id, {"prompts": []})

    else:
        return _rpc_error(rpc_id, -32601, f"Method {method} not found")


async def _retrieve_or_http_error(gateway: Gateway, resource_id: str, user_id: str):
    try:
        return await gateway.resources.retrieve(resource_id, owner_user_id=user_id)
    except ResourceNotFound as exc:
        raise HTTPException(status_code=404, detail=exc.message)
    except StorageUnavailable as exc:
        raise HTTPException(status_code=503, detail=exc.message)


@router.get("/resources/{resource_id}")
async def get_resource_metadata(resource_id: str, user_id: str = Depends(current_user),
                                gateway: Gateway = Depends(get_gateway)):
    stored = await _retrieve_or_http_error(gateway, resource_id, user_id)
    return stored.metadata.to_dict()


@router.get("/resources/{resource_id}/data")
async def get_resource_data(resource_id: str, user_id: str = Depends(current_user),
                            gateway: Gateway = Depends(get_gateway)):
    stored = await _retrieve_or_http_error(gateway, resource_id, user_id)
    return {"data": stored.data, "metadata": stored.metadata.to_dict()}


class PermissionUpdate(BaseModel):
    level: Union[int, str, None] = None
    connector: Optional[str] = None
    clearConnector: bool = False
    vacationUntil: Optional[float] = None
    endVacation: bool = False


def _settings_payload(gateway: Gateway, user_id: str) -> Dict[str, Any]:
    record = gateway.permissions.store.get_or_create(user_id)
    payload = record.to_dict()
    payload["effectiveLevels"] = {
        provider: int(gateway.permissions.effective_level(user_id, provider))
        for provider in sorted({t.provider for t in gateway.registry.all()})
    }
    payload["levels"] = [{"level": int(level), "name": name} for level, name in PERMISSION_LEVEL_NAMES.items()]
    return payload


@router.get("/settings/permissions")
def get_permission_settings(user_id: str = Depends(current_user), gateway: Gateway = Depends(get_gateway)):
    return _settings_payload(gateway, user_id)


@router.put("/settings/permissions")
def update_permission_settings(update: PermissionUpdate, user_id: str = Depends(current_user),
                               gateway: Gateway = Depends(get_gateway)):
    engine = gateway.permissions
    providers = {t.provider for t in gateway.registry.all()}
    if update.connector and update.connector not in providers:
        raise HTTPException(status_code=422, detail=f"Unknown connector {update.connector}")
    if update.clearConnector:
        if not update.connector:
            raise HTTPException(status_code=422, detail="clearConnector requires connector")
        engine.clear_connector_level(user_id, update.connector)
    elif update.level is not None:
        try:
            engine.set_permission_level(user_id, update.level, update.connector)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
    if update.endVacation:
        engine.set_vacation_mode(user_id, None)
    elif update.vacationUntil is not None:
        engine.set_vacation_mode(user_id, update.vacationUntil)
    return _settings_payload(gateway, user_id)
