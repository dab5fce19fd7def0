"""API controllers."""

from docingest.api.controller.attachment_controller import router as attachment_router

__all__ = ["attachment_router"]
