import logging

from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from kortingdeal.api.endpoints import admin, categories, products
from kortingdeal.db import get_session

logger = logging.getLogger(__name__)

app = FastAPI(title="KortingDeal")

app.include_router(products.router, prefix="/api/products", tags=["Products"])
app.include_router(categories.router, prefix="/api", tags=["Catalog"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])


@app.get("/health")
def health(session: Session = Depends(get_session)):
    db_ok = False
    try:
        session.execute(text("SELECT 1"))
        db_ok = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
    return {"status": "healthy" if db_ok else "unhealthy", "database": "ok" if db_ok else "error"}
