# In src/elb_log_ingest/schemas.py

from urllib.parse import unquote_plus

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .pipeline import ObjectSource


class S3BucketModel(BaseModel):
    name: str = Field(..., min_length=1)


class S3ObjectModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: str = Field(..., min_length=1)
    size: int | None = None
    version_id: str | None = Field(None, alias="versionId")
    sequencer: str | None = None

    # Keys arrive URL-encoded in notifications ("+" for spaces).
    @field_validator("key")
    @classmethod
    def decode_key(cls, value: str) -> str:
        decoded = unquote_plus(value)
        if not decoded:
            raise ValueError("S3 key must not be empty")
        return decoded


class S3DataModel(BaseModel):
    bucket: S3BucketModel
    object: S3ObjectModel


class S3EventNotificationRecord(BaseModel):
    """
    Pydantic model for runtime parsing and validation of an S3 event record.
    """

    model_config = ConfigDict(populate_by_name=True)

    aws_region: str | None = Field(None, alias="awsRegion")
    event_name: str | None = Field(None, alias="eventName")
    s3: S3DataModel

    def to_object_source(self) -> ObjectSource:
        return ObjectSource(
            bucket=self.s3.bucket.name,
            key=self.s3.object.key,
            region=self.aws_region,
        )
