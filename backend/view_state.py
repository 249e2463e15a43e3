"""
In-memory presentation state per viewer (device).

Holds the selected report, last known user location and map region. None of
this is domain data, so it is never written to the store and is lost on
restart.
"""

import logging
from threading import Lock
from typing import Dict, Optional

from pydantic import BaseModel

from mock_data import BASE_LATITUDE, BASE_LONGITUDE
from models import Coordinates

logger = logging.getLogger(__name__)

DEFAULT_REGION = Coordinates(
    latitude=BASE_LATITUDE,
    longitude=BASE_LONGITUDE,
    latitude_delta=0.1,
    longitude_delta=0.1,
)


class ViewState(BaseModel):
    selected_report_id: Optional[str] = None
    user_location: Optional[Coordinates] = None
    map_region: Coordinates = DEFAULT_REGION


# Format: {viewer_id: ViewState}
_view_states: Dict[str, ViewState] = {}
_state_lock = Lock()


def get_view_state(viewer_id: str) -> ViewState:
    """
    Return the viewer's presentation state, or the defaults if none was set.
    """
    with _state_lock:
        return _view_states.get(viewer_id, ViewState())


def update_view_state(viewer_id: str, **updates) -> ViewState:
    with _state_lock:
        current = _view_states.get(viewer_id, ViewState())
        updated = current.model_copy(update=updates)
        _view_states[viewer_id] = updated
        return updated


def clear_view_state(viewer_id: Optional[str] = None) -> None:
    """Drop one viewer's state, or everyone's when `viewer_id` is None."""
    with _state_lock:
        if viewer_id is None:
            _view_states.clear()
        else:
            _view_states.pop(viewer_id, None)
