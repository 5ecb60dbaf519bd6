from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from kortingdeal.db import get_session
from kortingdeal.schemas.product import AdvertiserResponse, CategoryResponse
from kortingdeal.services import catalog

router = APIRouter()


@router.get("/categories", response_model=List[CategoryResponse])
def list_categories(session: Session = Depends(get_session)):
    return catalog.list_categories(session)


@router.get("/categories/{slug}", response_model=CategoryResponse)
def get_category(slug: str, session: Session = Depends(get_session)):
    category = catalog.get_category_by_slug(session, slug)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


@router.get("/advertisers", response_model=List[AdvertiserResponse])
def list_advertisers(session: Session = Depends(get_session)):
    return catalog.list_advertisers(session)
