from fastapi import APIRouter, Depends, Query, Request

from glasswallet.api.envelope import success
from glasswallet.dependencies import get_current_user, rate_limit
from glasswallet.domain.intelligence import service as ai_service
from glasswallet.domain.intelligence.schemas import (
    AutoQualifyRequest,
    BatchQualifyRequest,
    RecommendationContext,
    ScoreRequest,
)

router = APIRouter(prefix="/ai", tags=["ai"], dependencies=[Depends(get_current_user)])


@router.post("/score", dependencies=[Depends(rate_limit("ai:score", 100))])
async def score(payload: ScoreRequest, request: Request):
    return success(request, await ai_service.score_lead(payload.lead_id, payload.features))


@router.post("/anomalies", dependencies=[Depends(rate_limit("ai:anomalies", 100))])
async def anomalies(payload: ScoreRequest, request: Request):
    return success(request, await ai_service.detect_anomalies(payload.lead_id, payload.features))


@router.post("/auto-qualify", dependencies=[Depends(rate_limit("ai:auto-qualify", 60))])
async def auto_qualify(payload: AutoQualifyRequest, request: Request):
    result = await ai_service.auto_qualify(
        payload.lead_id, payload.features, bypass_thresholds=payload.bypass_thresholds
    )
    return success(request, result)


@router.post("/batch-qualify", dependencies=[Depends(rate_limit("ai:batch-qualify", 10))])
async def batch_qualify(payload: BatchQualifyRequest, request: Request):
    return success(request, await ai_service.batch_qualify(payload.leads, payload.qualification_rules))


@router.get("/recommendations", dependencies=[Depends(rate_limit("ai:recommendations", 100))])
async def recommendations(request: Request, context: RecommendationContext = Query("overall")):
    return success(request, {"context": context, "recommendations": ai_service.recommendations(context)})
