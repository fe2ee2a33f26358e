from fastapi import APIRouter, Request, Response, status
from sqlalchemy import text

from order_worker.services.processor import WorkerState

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request, response: Response) -> dict[str, str | dict[str, str]]:
    health = {"status": "healthy", "checks": {}}

    try:
        async with request.app.state.session_maker() as session:
            await session.execute(text("SELECT 1"))
        health["checks"]["database"] = "healthy"
    except Exception as e:
        health["checks"]["database"] = f"unhealthy: {str(e)}"
        health["status"] = "unhealthy"

    processor = request.app.state.processor
    health["checks"]["processor"] = processor.state.value
    if processor.state is WorkerState.STOPPED:
        health["status"] = "unhealthy"

    if health["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return health
