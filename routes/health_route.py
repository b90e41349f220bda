from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from controllers.health_controller import basic_health, detailed_health, liveness, readiness

router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
async def health_route():
	"""Basic process health."""
	return basic_health()


@router.get("/detailed")
async def detailed_health_route(request: Request):
	"""Health including every storage tier and the cache."""
	status_code, body = await detailed_health(request)
	return JSONResponse(status_code=status_code, content=body)


@router.get("/ready")
async def ready_route(request: Request):
	status_code, body = await readiness(request)
	return JSONResponse(status_code=status_code, content=body)


@router.get("/live")
async def live_route():
	return liveness()
