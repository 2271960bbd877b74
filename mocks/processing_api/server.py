"""
Mock identity and processing API server for local development.

Issues opaque access tokens through a password grant and answers invoice
processing calls, failing a configurable share of them.
"""

import asyncio
import os
import random
import secrets
import time
from typing import Dict, Optional
from urllib.parse import parse_qs

from fastapi import FastAPI, HTTPException, Request

from shared.logging import get_logger


class MockProcessingApiServer:
    """Mock identity + processing API implementation."""

    def __init__(self,
                 realm: str = "invoices",
                 client_id: str = "invoice-dispatch",
                 token_ttl: int = 300,
                 failure_rate: float = 0.1,
                 latency: float = 0.3):
        self.logger = get_logger("mock.processing_api")
        self.app = FastAPI(title="Mock Processing API", version="1.0.0")

        self.realm = realm
        self.client_id = client_id
        self.token_ttl = token_ttl
        self.failure_rate = failure_rate
        self.latency = latency

        # token -> expiry (epoch seconds)
        self.tokens: Dict[str, float] = {}
        self.processed: Dict[str, int] = {}

        self._setup_routes()

    def _setup_routes(self):
        """Set up mock routes."""

        @self.app.get("/")
        async def root():
            return {
                "service": "mock-processing-api",
                "realm": self.realm,
                "failure_rate": self.failure_rate,
                "processed": len(self.processed)
            }

        @self.app.post("/realms/{realm}/protocol/openid-connect/token")
        async def token_endpoint(realm: str, request: Request):
            """Password grant token endpoint."""
            if realm != self.realm:
                raise HTTPException(status_code=404, detail="Realm not found")

            form = {key: values[0] for key, values in parse_qs((await request.body()).decode()).items()}

            if form.get("client_id") != self.client_id:
                raise HTTPException(status_code=400, detail="Invalid client")
            if form.get("grant_type") != "password":
                raise HTTPException(status_code=400, detail="Unsupported grant type")
            if not form.get("username") or not form.get("password"):
                raise HTTPException(status_code=401, detail="Invalid user credentials")

            token = secrets.token_urlsafe(32)
            self.tokens[token] = time.time() + self.token_ttl
            self.logger.info("Token issued", username=form["username"], expires_in=self.token_ttl)

            return {
                "access_token": token,
                "expires_in": self.token_ttl,
                "token_type": "Bearer"
            }

        @self.app.post("/api/invoices/{item_id}")
        async def process_invoice(item_id: str, request: Request):
            """Process one invoice."""
            self._authorize(request.headers.get("Authorization"))

            if self.latency:
                await asyncio.sleep(self.latency)

            self.processed[item_id] = self.processed.get(item_id, 0) + 1

            if random.random() < self.failure_rate:
                status = random.choice(["NO_WS1", "NO_WS2", "ERROR"])
                self.logger.warning("Simulated processing failure", item_id=item_id, status=status)
                return {"success": False, "status": status, "data": None}

            self.logger.info("Invoice processed", item_id=item_id)
            return {"success": True, "status": "COMPLETED", "data": {"id": item_id}}

    def _authorize(self, header: Optional[str]):
        if not header or not header.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Missing bearer token")

        expires_at = self.tokens.get(header[len("Bearer "):])
        if expires_at is None or expires_at <= time.time():
            raise HTTPException(status_code=401, detail="Invalid or expired token")


def create_app():
    """Create mock processing API application."""
    server = MockProcessingApiServer(
        token_ttl=int(os.getenv("MOCK_TOKEN_TTL", "300")),
        failure_rate=float(os.getenv("MOCK_FAILURE_RATE", "0.1")),
        latency=float(os.getenv("MOCK_LATENCY_SECONDS", "0.3"))
    )
    return server.app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8090)
