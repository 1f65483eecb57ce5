from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    return {"ok": True}


@router.get("/readyz")
def readyz(request: Request):
    mediator = request.app.state.mediator
    return {
        "ready": True,
        "codes": len(mediator.codes),
        "sessions": mediator.sessions.count_by_status(),
    }
