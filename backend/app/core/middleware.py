import time
import logging
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

# === 结构化日志配置 ===
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("fronsci")


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """
    统一异常捕获中间件：请求耗时日志 + 未处理异常 -> JSON 500。

    业务拒绝（ServiceResult.fail）在路由层已转成 HTTPException，这里不会看到。
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
            process_time = time.time() - start_time
            logger.info(
                "Method: %s Path: %s Status: %s Time: %.4fs",
                request.method,
                request.url.path,
                response.status_code,
                process_time,
            )
            return response
        except HTTPException as exc:
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.detail, "type": "http_exception"},
            )
        except Exception as e:
            logger.error("Unhandled Exception: %s", e, exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal server error", "type": "server_error"},
            )
