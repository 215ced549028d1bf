from fastapi import APIRouter
from .v1 import image_analysis, image_generation, storage, text_generation, workflows

api_router = APIRouter(prefix="/api", tags=["storyboard"])

api_router.include_router(text_generation.router, prefix="/v1", tags=["text-generation"])
api_router.include_router(image_generation.router, prefix="/v1", tags=["image-generation"])
api_router.include_router(image_analysis.router, prefix="/v1", tags=["image-analysis"])
api_router.include_router(storage.router, prefix="/v1", tags=["storage"])
api_router.include_router(workflows.router, prefix="/v1", tags=["workflows"])

@api_router.get("/")
def read_root():
    return {"message": "Storyboard API"}
