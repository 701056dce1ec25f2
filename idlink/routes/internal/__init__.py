"""Internal API route aggregation."""

from fastapi import APIRouter, Depends

from idlink.auth.internal import internal_auth_dependency
from idlink.routes.internal import guilds, members

router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(internal_auth_dependency)],
)

router.include_router(members.router)
router.include_router(guilds.router)
