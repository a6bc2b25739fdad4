"""Order funnel states.

The state of a chat is never stored on its own: it is derived from which
fields of the session are filled in, so a session written by any handler
always has exactly one well-defined state.
"""

from enum import Enum
from typing import Optional

from data_models import OrderSession


class OrderState(str, Enum):
    """States of the purchase funnel for a single chat."""

    IDLE = "idle"
    ITEM_SELECTED = "item_selected"
    ID_PENDING_CONFIRM = "id_pending_confirm"
    CHANNEL_PENDING = "channel_pending"
    READY_TO_PAY = "ready_to_pay"


def derive_state(session: Optional[OrderSession]) -> OrderState:
    """Return the funnel state a session is in.

    Args:
        session: The chat's session, or None if there is none.

    Returns:
        The matching :class:`OrderState`.
    """
    if session is None or not session.has_order:
        return OrderState.IDLE
    if not session.game_player_id:
        return OrderState.ITEM_SELECTED
    if not session.id_confirmed:
        return OrderState.ID_PENDING_CONFIRM
    if not session.channel or session.final_amount is None:
        return OrderState.CHANNEL_PENDING
    return OrderState.READY_TO_PAY
