import json
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from hrms_services.config import (
    DATABASE_URL,
    DB_MAX_OVERFLOW,
    DB_POOL_SIZE,
    LOG_LEVEL,
    SERVICE_NAME,
)

# Setup logging
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("microservice")

# SQLAlchemy async setup, one bounded pool per process
engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    pool_size=DB_POOL_SIZE,
    max_overflow=DB_MAX_OVERFLOW,
    pool_pre_ping=True,
)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HRMSResponse(JSONResponse):
    """
    Standard response envelope for all API endpoints.

    Success: {"status": "success", "data": ...}
    Error:   {"status": "error", "message": ...}
    """
    def __init__(
        self,
        data: Any = None,
        message: Optional[str] = None,
        status: str = "success",
        extra: Optional[Dict[str, Any]] = None,
        **kwargs,
    ):
        content: Dict[str, Any] = {"status": status}
        if message is not None:
            content["message"] = message
        if extra:
            content.update(extra)
        if status == "success":
            content["data"] = data
        elif data is not None:
            content["data"] = data
        super().__init__(content=jsonable_encoder(content), **kwargs)


class BaseMicroservice:
    """
    Base class for all HRMS services. Provides:
    - Event/error logging
    - Standard response envelopes
    """
    def __init__(self, service_name: str = SERVICE_NAME):
        self.service_name = service_name
        self.logger = logging.getLogger(service_name)

    def success_response(
        self,
        data: Any = None,
        message: Optional[str] = None,
        status_code: int = 200,
    ) -> HRMSResponse:
        """Return a success envelope."""
        return HRMSResponse(data=data, message=message, status_code=status_code)

    def paginated_response(
        self,
        items: List[Any],
        total: int,
        page: int,
        limit: int,
        message: Optional[str] = None,
    ) -> HRMSResponse:
        """
        Return a list envelope with pagination metadata.

        Args:
            items: The page of results
            total: Total number of matching rows
            page: 1-based page number
            limit: Page size

        Returns:
            Envelope with results, total, page and pages
        """
        return HRMSResponse(
            data=items,
            message=message,
            extra={
                "results": len(items),
                "total": total,
                "page": page,
                "pages": math.ceil(total / limit) if limit else 0,
            },
        )

    def error_response(self, message: str, status_code: int, kind: Optional[str] = None) -> HRMSResponse:
        """Return an error envelope."""
        extra = {"kind": kind} if kind else None
        return HRMSResponse(message=message, status="error", extra=extra, status_code=status_code)

    def log_event(self, event: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        log_data = {
            "timestamp": utcnow().isoformat(),
            "service": self.service_name,
            "event": event,
            "data": details or {},
        }
        self.logger.info(f"EVENT: {json.dumps(log_data, default=str)}")
        return log_data

    def log_error(self, error: Exception, context: str = "") -> Dict[str, Any]:
        error_data = {
            "timestamp": utcnow().isoformat(),
            "service": self.service_name,
            "error": str(error),
            "error_type": error.__class__.__name__,
            "context": context or "unknown",
        }
        self.logger.error(f"ERROR: {json.dumps(error_data, default=str)}")
        return error_data
