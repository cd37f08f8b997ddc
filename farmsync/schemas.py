from pydantic import BaseModel, Field
from typing import Optional


class SyncPayload(BaseModel):
    farmers_csv: str = Field(..., description="farmers.csv from the device SD card, header line included")
    datalog_csv: str = Field(..., description="datalog.csv from the device SD card, header line included")


class SmsSettingsUpdate(BaseModel):
    sms_enabled: bool = Field(False)
    message_template: Optional[str] = Field(None, description="SMS body with {placeholder} tokens")


class DeviceSmsSettings(BaseModel):
    enabled: bool
    template: str


class ServerTime(BaseModel):
    year: int
    month: int
    day: int
    hour: int
    minute: int
    second: int


class SyncResponse(BaseModel):
    success: bool = True
    message: str = Field(..., description="Human readable message")
    farmers_imported: int
    readings_imported: int
    sms_settings: DeviceSmsSettings
    server_time: ServerTime
