from fastapi import APIRouter
from ..config import USE_POSTGRES
from ..db import read_connection, get_db_path

router = APIRouter()


@router.get("/health")
async def health():
    if USE_POSTGRES:
        from ..db_postgres import health_check
        database = await health_check()
    else:
        try:
            with read_connection() as conn:
                conn.execute("SELECT 1").fetchone()
            database = {"status": "healthy", "database": "sqlite", "path": get_db_path()}
        except Exception as e:
            database = {"status": "unhealthy", "database": "sqlite", "error": str(e)}
    return {"ok": database["status"] == "healthy", "database": database}
