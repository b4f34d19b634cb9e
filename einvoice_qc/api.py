"""
FastAPI application for the e-invoice compliance engine.

Provides REST API endpoints for:
- Health check and the check catalog
- Running catalog/custom checks over a dataset
- Pairwise search checks
- Traceability matrix and consistency report
- Case workflow transitions
"""

from typing import Any, List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .cases import CaseTransitionError, transition_case
from .catalog import default_check_pack
from .config import API_HOST, API_PORT, SPEC_VERSION_LABEL, logger
from .consistency import run_consistency_checks
from .context import DataContext, EngineInputError
from .coverage import build_traceability_matrix, compute_dataset_populations, readiness_from_matrix
from .custom_checks import run_search_checks
from .schemas import (
    CaseStatus,
    CatalogCheck,
    CheckRunResult,
    ComplianceException,
    ConformanceResult,
    ConsistencyReport,
    CustomCheck,
    DatasetType,
    InvestigationFlag,
    ReadinessResult,
)
from .validator import run_compliance_checks


# ============================================================================
# FastAPI App Configuration
# ============================================================================

app = FastAPI(
    title="E-Invoice Compliance Engine API",
    description="""
    Rule evaluation engine for e-invoicing compliance datasets.

    ## Features

    - **Run checks**: Evaluate the UAE UC1 catalog and tenant custom checks
    - **Search checks**: Confidence-scored duplicate and variant leads (AP only)
    - **Traceability**: Requirement coverage by template, rules and controls
    - **Consistency**: Integrity of the requirement, rule and control catalogs
    """,
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# Configure CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
        "*",  # Allow all origins for development
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Request/Response Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    spec_version: str


class DatasetPayload(BaseModel):
    """Header, line and party records of one dataset."""
    headers: List[dict[str, Any]] = Field(default_factory=list)
    lines: List[dict[str, Any]] = Field(default_factory=list)
    buyers: List[dict[str, Any]] = Field(default_factory=list)

    def to_context(self) -> DataContext:
        return DataContext.build(headers=self.headers, lines=self.lines, buyers=self.buyers)


class RunChecksRequest(DatasetPayload):
    """Request body for the check run endpoint."""
    dataset_type: Optional[DatasetType] = None
    custom_checks: List[CustomCheck] = Field(default_factory=list)
    include_baseline: bool = False
    tolerance: Optional[float] = Field(None, ge=0)

    model_config = {
        "json_schema_extra": {
            "examples": [{
                "dataset_type": "AR",
                "headers": [{
                    "invoice_id": "h1",
                    "invoice_number": "INV-001",
                    "seller_trn": "100000000000003",
                    "currency": "AED",
                    "total_excl_vat": 100,
                    "vat_total": 5,
                    "total_incl_vat": 105,
                }],
                "lines": [{"invoice_id": "h1", "line_id": "l1", "line_number": 1, "quantity": 1, "unit_price": 100, "line_total_excl_vat": 100, "vat_rate": 5, "vat_amount": 5}],
                "buyers": [],
            }]
        }
    }


class SearchChecksRequest(DatasetPayload):
    """Request body for the search check endpoint."""
    dataset_type: DatasetType = DatasetType.AP
    checks: List[CustomCheck]


class SearchChecksResponse(BaseModel):
    flags: List[InvestigationFlag]
    total_flags: int


class TraceabilityResponse(BaseModel):
    matrix: ConformanceResult
    readiness: Optional[ReadinessResult] = None


class CaseTransitionRequest(BaseModel):
    exception: ComplianceException
    status: CaseStatus
    reason_code: Optional[str] = None
    direction: Optional[DatasetType] = None


# ============================================================================
# API Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check() -> HealthResponse:
    """
    Health check endpoint.

    Returns the service status, version and the jurisdiction spec label
    the seeded catalogs correspond to.
    """
    from . import __version__
    return HealthResponse(status="ok", version=__version__, spec_version=SPEC_VERSION_LABEL)


@app.get("/rules", response_model=List[CatalogCheck], tags=["System"])
async def list_rules(include_baseline: bool = False) -> List[CatalogCheck]:
    """List the seeded catalog checks."""
    return default_check_pack(include_baseline=include_baseline)


@app.post(
    "/run-checks",
    response_model=CheckRunResult,
    tags=["Checks"],
    summary="Run compliance checks over a dataset",
)
async def run_checks(request: RunChecksRequest) -> CheckRunResult:
    """
    Run the catalog (and any custom checks) over the posted dataset.

    Exceptions are hard failures tied to one record; flags come from search
    checks and are only produced for AP datasets.
    """
    logger.info(f"Received check run request for {len(request.headers)} invoices")
    return run_compliance_checks(
        request.to_context(),
        catalog_checks=default_check_pack(include_baseline=request.include_baseline),
        custom_checks=request.custom_checks,
        dataset_type=request.dataset_type,
        tolerance=request.tolerance,
    )


@app.post("/search-checks", response_model=SearchChecksResponse, tags=["Checks"])
async def search_checks(request: SearchChecksRequest) -> SearchChecksResponse:
    """Run pairwise search checks over the posted headers."""
    flags = run_search_checks(request.checks, request.to_context(), request.dataset_type)
    return SearchChecksResponse(flags=flags, total_flags=len(flags))


@app.post("/traceability", response_model=TraceabilityResponse, tags=["Coverage"])
async def traceability(dataset: Optional[DatasetPayload] = None) -> TraceabilityResponse:
    """
    Build the traceability matrix.

    When a dataset is posted, column population feeds the matrix and a
    run-readiness verdict is returned alongside it.
    """
    if dataset is None:
        return TraceabilityResponse(matrix=build_traceability_matrix())
    matrix = build_traceability_matrix(populations=compute_dataset_populations(dataset.to_context()))
    return TraceabilityResponse(matrix=matrix, readiness=readiness_from_matrix(matrix))


@app.get("/consistency", response_model=ConsistencyReport, tags=["Coverage"])
async def consistency() -> ConsistencyReport:
    """Cross-check the requirement, rule and control catalogs."""
    return run_consistency_checks()


@app.post("/cases/transition", response_model=ComplianceException, tags=["Cases"])
async def case_transition(request: CaseTransitionRequest) -> ComplianceException:
    """Move an exception through the case workflow."""
    return transition_case(request.exception, request.status, request.reason_code, request.direction)


# ============================================================================
# Error Handlers
# ============================================================================

@app.exception_handler(EngineInputError)
async def engine_input_exception_handler(request, exc):
    """Malformed datasets are client errors."""
    logger.warning(f"Rejected input: {exc}")
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(CaseTransitionError)
async def case_transition_exception_handler(request, exc):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def generic_exception_handler(request, exc):
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# ============================================================================
# Startup/Shutdown Events
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Log startup information."""
    logger.info(f"E-Invoice Compliance Engine API starting on {API_HOST}:{API_PORT}")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    logger.info("E-Invoice Compliance Engine API shutting down")


# ============================================================================
# Main Entry Point
# ============================================================================

def run_server():
    """Run the API server using uvicorn."""
    import uvicorn
    uvicorn.run(app, host=API_HOST, port=API_PORT)


if __name__ == "__main__":
    run_server()
