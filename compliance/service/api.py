"""
AgriTrace Ledger Compliance API Service

FastAPI application exposing the compliance core:
- /api/workflows - per-batch compliance workflow
- /api/certificates - certificate approval queue
- /api/marketplace - offers and three-party purchase requests
- /api/operator - parked operations
- GET /health - health check

Domain errors (compliance.errors) are translated to HTTP responses here;
the body always carries the entity's current state when one was loaded.
"""

import logging

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from compliance.errors import (
    AuthorizationError,
    ComplianceError,
    EntityNotFound,
    ExpirationError,
    ExternalServiceError,
    PreconditionError,
    StateConflictError,
    ValidationError,
)
from compliance.service.certificate_api import router as certificate_router
from compliance.service.dependencies import Services, get_services
from compliance.service.marketplace_api import router as marketplace_router
from compliance.service.operator_api import router as operator_router
from compliance.service.workflow_api import router as workflow_router

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS_CODES = (
    (EntityNotFound, 404),
    (ValidationError, 400),
    (AuthorizationError, 403),
    (StateConflictError, 409),
    (PreconditionError, 409),
    (ExpirationError, 410),
    (ExternalServiceError, 503),
)


def status_code_for(error: ComplianceError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


app = FastAPI(
    title="AgriTrace Ledger Compliance API",
    description="Multi-actor compliance workflow and marketplace coordination for commodity supply chains",
    version="1.0.0"
)

app.include_router(workflow_router)
app.include_router(certificate_router)
app.include_router(marketplace_router)
app.include_router(operator_router)

# Allow local tools and UIs
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ComplianceError)
async def compliance_error_handler(request: Request, exc: ComplianceError):
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} refused ({exc.kind}): {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.get("/health")
def health_check(services: Services = Depends(get_services)):
    """Health check with maintenance status."""
    return {
        "service": "AgriTrace Ledger Compliance API",
        "status": "maintenance" if services.settings.maintenance_mode else "operational",
        "version": "1.0.0",
        "maintenance_mode": services.settings.maintenance_mode,
    }


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
