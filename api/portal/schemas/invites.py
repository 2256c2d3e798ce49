from pydantic import BaseModel


class RedeemInviteCodeRequest(BaseModel):
    code: str = ""


class RedeemInviteCodeOut(BaseModel):
    invite_code_id: str
    status: str
    used_count: int
