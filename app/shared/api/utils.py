import inspect
import logging
import pkgutil
import sys
import traceback
from importlib import import_module
from os import environ
from typing import Any, Literal
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from .errors import E_INTERNAL, E_INVALID_PARAMS

# Libraries that log through the standard logging module; only their errors are interesting
_NOISY_LOGGERS = ('websockets', 'aioice', 'aiortc', 'uvicorn.access')


def format_error(ex: BaseException) -> str:
    return ''.join(traceback.format_exception(ex))


class ApiResponse(BaseModel):
    version: str | None = Field(default_factory=lambda: environ.get('BUILD_COMMIT', 'dev'))


class ApiSuccess(ApiResponse):
    success: Literal[True] = True
    results: Any = "OK"


class ApiFailure(ApiResponse):
    success: Literal[False] = False
    errcode: str = E_INTERNAL
    erresid: str = Field(default_factory=lambda: uuid4().hex[:10])
    errmesg: str = 'We are sorry, an error occurred.'


def api_failure(errcode: str | None = None, errmesg: Exception | str | None = None) -> ApiFailure:
    """Build an ApiFailure and log it with the call site that produced it."""
    if isinstance(errmesg, Exception):
        errmesg = format_error(errmesg)

    failure = ApiFailure(errcode=errcode or E_INTERNAL)
    if errmesg:
        failure.errmesg = errmesg

    caller = inspect.stack()[1]
    logger.warning(
        '{} {} {} caller={}:{}:{}',
        failure.errcode, failure.erresid, failure.errmesg,
        caller.filename, caller.function, caller.lineno,
    )
    return failure


def make_response(results: BaseModel | dict, *, status_code: int | None = None) -> ORJSONResponse:
    if status_code is None:
        errcode = getattr(results, 'errcode', None)
        if errcode is None and isinstance(results, dict):
            errcode = results.get('errcode')
        if errcode is None:
            status_code = 200
        else:
            status_code = 500 if errcode == E_INTERNAL else 400

    return ORJSONResponse(
        status_code=status_code,
        content=results.model_dump() if isinstance(results, BaseModel) else results,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(
        "Validation error: path={} method={} errors={}",
        request.url.path, request.method, exc.errors()
    )

    failure = api_failure(E_INVALID_PARAMS, errmesg=str(exc.errors()))
    return make_response(failure, status_code=422)


def load_routes(app: FastAPI, prefix: str, package: str):
    """Include the ``router`` of every module in ``package`` under ``prefix``."""
    from ..config import config
    disabled_routes = config.get_list('API_DISABLED')

    pkg = import_module(package)
    for info in pkgutil.iter_modules(pkg.__path__, f'{package}.'):
        name = info.name
        if name.rsplit('.', 1)[-1] in disabled_routes:
            logger.warning('disabled route {}', name)
            continue

        module = import_module(name)
        if hasattr(module, 'router'):
            app.include_router(module.router, prefix=prefix)
            logger.debug('Added routes in {}', name)


def init_logger():
    from ..config import config

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)

    logger.remove()

    service = environ.get('WORKER_NAME', 'relay')
    commit_id = environ.get('BUILD_COMMIT', 'dev')

    if config.get_bool('DEBUG'):
        logger.add(
            sys.stderr,
            level='DEBUG',
            format=(
                f'<yellow>{service}:{commit_id}</yellow> | '
                '<green>{time:MM-DD HH:mm:ss.SSS}</green> | '
                '<level>{level: <8}</level> | '
                '<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | '
                '<level>{message}</level>'
            ),
        )
    else:
        logger.add(
            sys.stderr,
            level='INFO',
            format=f'{service}:{commit_id} | {{time:MM-DD HH:mm:ss.SSS}} | {{level: <8}} | {{name}}:{{line}} | {{message}}',
        )
