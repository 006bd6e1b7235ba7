"""Installability descriptor consumed by the browser, not by the worker."""

from fastapi import APIRouter

from pushline.config import settings

router = APIRouter(tags=["manifest"])

ICON_SIZES = (192, 512)


@router.get("/manifest.json")
async def get_manifest() -> dict:
    return {
        "name": settings.APP_NAME,
        "short_name": settings.APP_SHORT_NAME,
        "start_url": "/",
        "scope": "/",
        "display": "standalone",
        "theme_color": settings.APP_THEME_COLOR,
        "background_color": settings.APP_BACKGROUND_COLOR,
        "icons": [
            {"src": f"/icon-{size}x{size}.png", "sizes": f"{size}x{size}", "type": "image/png"}
            for size in ICON_SIZES
        ],
    }
