from fastapi import APIRouter, HTTPException, Request, Response

from ordersync.api.bearer import bearer_token, token_matches

router = APIRouter()


def _guard(request: Request) -> None:
    app_settings = getattr(request.app.state, "app_settings", None)
    if app_settings is None:
        return
    token = (app_settings.metrics_token or "").strip()
    if not token:
        if app_settings.app_env == "prod":
            raise HTTPException(status_code=500, detail="Metrics token misconfigured")
        return
    if not token_matches(bearer_token(request), token):
        raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Bearer"})


@router.get("/metrics")
async def metrics_endpoint(request: Request) -> Response:
    metrics_client = getattr(request.app.state, "metrics", None)
    if metrics_client is None or not metrics_client.enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    _guard(request)
    payload, content_type = metrics_client.render()
    return Response(content=payload, media_type=content_type)
