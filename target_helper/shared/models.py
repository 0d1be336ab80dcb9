from pydantic import BaseModel, ConfigDict


class TargetBaseModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,  # accept both docKey and doc_key
        arbitrary_types_allowed=True,
    )
