from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stockengine.app.api.deps import get_db
from stockengine.app.schemas.production import MaterialRequirementRead
from stockengine.services import mrp

router = APIRouter(prefix="/mrp")


@router.get("/requirements", response_model=list[MaterialRequirementRead])
def get_requirements(db: Session = Depends(get_db)):
    """
    Besoins matières (READ ONLY)
    - tri : déficit décroissant puis material_id
    """
    return mrp.compute_requirements(db)
