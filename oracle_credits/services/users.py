"""User directory lookups. Authentication itself happens upstream; we only trust the session user id."""

from beanie import PydanticObjectId
from bson.errors import InvalidId

from oracle_credits.core.audit import log_event
from oracle_credits.core.exceptions import UserNotFoundError
from oracle_credits.core.logging import get_logger
from oracle_credits.models.user import User
from oracle_credits.services import ledger

log = get_logger(__name__)


async def find_user(user_id: PydanticObjectId | str) -> User:
    try:
        user = await User.get(PydanticObjectId(user_id))
    except InvalidId:
        user = None
    if not user:
        raise UserNotFoundError(user_id)
    return user


async def create_user(email: str, name: str = "", role: str = "user") -> User:
    """Insert a user and open their credit account."""
    user = User(email=email, name=name, role=role)
    await user.insert()
    await ledger.open_account(user.id)
    log.info("user_created", user_id=str(user.id), email=user.email)
    await log_event(str(user.id), "user_created", "user", str(user.id), {"email": user.email})
    return user


def session_payload_for_user(user: User) -> dict:
    return {"user_id": str(user.id), "session_version": user.session_version}
