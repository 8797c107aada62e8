from typing import List

from relay.schemas.base import CamelModel


class OnlineUsers(CamelModel):
    user_ids: List[int]
    count: int
