"""
shadowrooms.schemas
~~~~~~~~~~~~~~~~~~~
Pydantic schemas and models for the API.
"""
from shadowrooms.schemas.api_response import ApiResponse
from shadowrooms.schemas.rooms import (
    CreateRoomData,
    CreateRoomRequest,
    JoinData,
    JoinRequest,
    MediaUploadData,
    ResolveData,
    RoomInfoData,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
