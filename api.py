from fastapi import FastAPI, HTTPException, Query, Security, Depends, Request
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool
from starlette.middleware.cors import CORSMiddleware
from typing import Optional, List, Dict, Any
import os
import sys

# Rate Limiting
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

# Add current directory to path
sys.path.insert(0, os.getcwd())

from main import VERSION, build_config, configure_logging
from scanner_module.dns_records import INVALID_DOMAIN
from scanner_module.logger import get_child_logger
from scanner_module.options import ConfigurationError
from scanner_module.scanner import Scanner

API_PATH = "/api/v1"
DEFAULT_RATE_LIMIT = "60/minute"
MAX_SELECTORS = 5
MAX_BULK_DOMAINS = 20

limiter = Limiter(key_func=get_remote_address)
app = FastAPI(
    title="Domain Security Scanner",
    version=VERSION,
    description="Scan domains for BIMI, DKIM, DMARC, MX and SPF DNS records.",
    docs_url=f"{API_PATH}/docs",
    openapi_url=f"{API_PATH}/docs.json",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

origins = os.getenv("CORS_ORIGINS", "*").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Accept", "Content-Type", "X-API-Key"],
    max_age=300,
)

log = get_child_logger("api")

# Shared scanner; main.py injects one configured from the command line
scanner: Optional[Scanner] = None

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


class BulkScanRequest(BaseModel):
    domains: List[str] = Field(..., min_length=1, max_length=MAX_BULK_DOMAINS, description="Domains to scan")


def set_scanner(instance: Scanner) -> None:
    global scanner
    scanner = instance


def _rate_limit() -> str:
    return os.getenv("RATE_LIMIT", DEFAULT_RATE_LIMIT)


async def check_api_key(api_key: str = Security(api_key_header)):
    """
    Validates API Key if 'API_KEY' env var is set.
    If 'API_KEY' is NOT set, allows open access.
    """
    expected_key = os.getenv("API_KEY")
    if expected_key:
        if api_key != expected_key:
            raise HTTPException(status_code=403, detail="Invalid API Key")
    return api_key


def _require_scanner() -> Scanner:
    if scanner is None or scanner.closed:
        raise HTTPException(status_code=503, detail="Scanner not initialized")
    return scanner


def _parse_selectors(raw: Optional[str]) -> Optional[List[str]]:
    if not raw:
        return None
    selectors = [s.strip() for s in raw.split(",") if s.strip()]
    if len(selectors) > MAX_SELECTORS:
        raise HTTPException(status_code=400, detail=f"at most {MAX_SELECTORS} DKIM selectors are allowed")
    return selectors or None


async def _scan(domains: List[str], selectors: Optional[List[str]] = None):
    sc = _require_scanner()
    try:
        # scans block on DNS I/O; keep them off the event loop
        return await run_in_threadpool(sc.scan, *domains, dkim_selectors=selectors)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.on_event("startup")
async def startup_event():
    global scanner
    if scanner is None:
        configure_logging()
        scanner = Scanner(build_config())
    log.info("Starting up API (nameservers={})", ",".join(scanner.pool.servers))

    if not os.getenv("API_KEY"):
        log.warning("No API_KEY configured! API is accessible without authentication (Rate Limits apply).")


@app.on_event("shutdown")
async def shutdown_event():
    if scanner is not None:
        scanner.close()


@app.get("/health")
@limiter.exempt
def health_check():
    return {"status": "ok"}


@app.get(f"{API_PATH}/version")
@limiter.exempt
def version():
    return {"version": VERSION}


@app.get(f"{API_PATH}/scan/{{domain}}", dependencies=[Depends(check_api_key)])
@limiter.limit(_rate_limit)
async def scan_domain(
    request: Request,
    domain: str,
    dkimSelectors: Optional[str] = Query(None, description="Comma separated DKIM selectors to try first"),
) -> Dict[str, Any]:
    if len(domain) > 255:
        raise HTTPException(status_code=400, detail="domain name is too long")

    results = await _scan([domain], _parse_selectors(dkimSelectors))
    if len(results) != 1:
        raise HTTPException(status_code=500, detail=f"expected 1 result, got {len(results)}")

    result = results[0]
    if result.error == INVALID_DOMAIN:
        raise HTTPException(status_code=400, detail=INVALID_DOMAIN)
    return result.to_dict()


@app.post(f"{API_PATH}/scan", dependencies=[Depends(check_api_key)])
@limiter.limit(_rate_limit)
async def scan_domains(
    request: Request,
    body: BulkScanRequest,
    dkimSelectors: Optional[str] = Query(None, description="Comma separated DKIM selectors to try first"),
) -> Dict[str, Any]:
    results = await _scan(body.domains, _parse_selectors(dkimSelectors))
    return {"results": [r.to_dict() for r in results]}
