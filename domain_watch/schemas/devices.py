from pydantic import BaseModel, Field


class DeviceIngestedRequest(BaseModel):
    upload_batch: str = Field(min_length=1, max_length=255)


class DeviceIngestedOut(BaseModel):
    device_id: str
    upload_batch: str
    status: str = "scheduled"
