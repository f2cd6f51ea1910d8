from pydantic import BaseModel, ConfigDict

from glasswallet.shared.naming import to_camel


class ApiRequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="forbid")


class ApiResponseModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True, alias_generator=to_camel, from_attributes=True, extra="ignore"
    )
