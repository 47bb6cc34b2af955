from fastapi import APIRouter

router = APIRouter()


@router.get("/health", summary="Health Check", description="Liveness check for the billing API.")
async def health_check():
    return {"status": "healthy", "service": "recruit-billing"}
