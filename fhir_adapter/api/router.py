from fastapi import APIRouter

from fhir_adapter.api.routes import health, monitoring, patients, process

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(monitoring.router, prefix="/api/monitoring", tags=["monitoring"])
api_router.include_router(process.router, prefix="/api", tags=["processing"])
api_router.include_router(patients.router, prefix="/api/patient", tags=["registry"])
