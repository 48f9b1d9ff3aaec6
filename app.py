import os
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

# Load environment variables
load_dotenv()

from utils import logger, MCP_PROTOCOL_VERSION, SERVER_NAME, SERVER_VERSION
from auth import AUTH0_AUDIENCE, AUTH0_DOMAIN, GATEWAY_SCOPES
import mcp_server

# Initialize FastAPI app
app = FastAPI(title="Pip MCP Tool Gateway", version=SERVER_VERSION)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request Logging Middleware
class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        logger.info("Incoming request: %s %s", request.method, request.url.path)
        if request.method.upper() == "POST" and request.url.path.endswith("/mcp"):
            logger.debug("Routing MCP call for path=%s", request.url.path)
        try:
            response = await call_next(request)
            logger.info("Request completed: %s", response.status_code)
            return response
        except Exception as e:
            logger.error("Request failed: %s", e)
            raise

app.add_middleware(RequestLoggingMiddleware)

# Mount Routers
app.include_router(mcp_server.router, prefix="", tags=["gateway"])


# Global MCP Manifest
@app.get("/.well-known/mcp.json")
async def mcp_manifest():
    return {
        "mcpVersion": MCP_PROTOCOL_VERSION,
        "capabilities": {
            "tools": {"listChanged": False},
            "resources": {"listChanged": False, "subscribe": False},
            "prompts": {"listChanged": False},
            "logging": {},
        },
        "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
    }


# OAuth 2.0 Protected Resource Metadata (RFC 9470)
@app.get("/.well-known/oauth-protected-resource")
async def oauth_protected_resource():
    if not AUTH0_DOMAIN or not AUTH0_AUDIENCE:
        return Response(status_code=404)
    return {
        "resource": AUTH0_AUDIENCE,
        "authorization_servers": [f"https://{AUTH0_DOMAIN}/"],
        "scopes_supported": GATEWAY_SCOPES,
        "bearer_methods_supported": ["header"],
    }


# Health Check
@app.get("/health")
def health_check():
    return {"status": "ok"}

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
