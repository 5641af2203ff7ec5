from pydantic import AliasChoices, BaseModel, Field


class InitiateRequest(BaseModel):
    identity: str = Field(validation_alias=AliasChoices("identity", "username"))
    wallet: str


class VerifyRequest(BaseModel):
    identity: str = Field(validation_alias=AliasChoices("identity", "username"))
    wallet: str
    signature: str = Field(validation_alias=AliasChoices("signature", "walletSignature"))
