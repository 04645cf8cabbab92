"""Shared router dependencies."""

from fastapi import HTTPException, Request

from services.converter import ConverterService, build_converter_service
from services.errors import ConverterError


def get_converter_service(request: Request) -> ConverterService:
    """Return the process-wide converter service, building it on first use."""
    service = getattr(request.app.state, "converter", None)
    if service is None:
        service = build_converter_service()
        request.app.state.converter = service
    return service


def http_error(exc: ConverterError, status_code: int = None) -> HTTPException:
    return HTTPException(status_code=status_code or exc.status_code, detail=exc.to_detail())
