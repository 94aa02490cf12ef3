"""
Database Schemas for the Student Recycling Rewards API

Each Pydantic model represents a MongoDB collection; the collection names
live in database.py. For example: RecyclingActivity -> "recycling_activities".

These schemas are used for validating data before inserting into the
database. The result models at the bottom are what the API hands back.
"""
from datetime import datetime
from typing import Dict, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Material = Literal[
    "plastic", "glass", "aluminum", "paper", "cardboard", "metal", "electronics", "other"
]

VoucherStatus = Literal["active", "redeemed", "expired"]


class UserAccount(BaseModel):
    """
    Student profile and running totals
    Collection: "users" (_id is the identity issued by the auth provider)
    """
    email: Optional[EmailStr] = Field(None, description="Login email")
    first_name: str = Field("", description="Given name")
    last_name: str = Field("", description="Family name")
    display_name: str = Field("", description="Name shown on leaderboards")
    student_id: Optional[str] = Field(None, description="Campus student number")
    university: Optional[str] = Field(None, description="University document id")
    residence_hall: Optional[str] = Field(None, description="Residence hall document id")
    points_balance: int = Field(0, ge=0, description="Spendable points")
    total_points_earned: int = Field(0, ge=0, description="Lifetime points earned")
    total_points_spent: int = Field(0, ge=0, description="Lifetime points spent on vouchers")
    total_items_recycled: int = Field(0, ge=0, description="Lifetime item count")
    total_co2_saved: float = Field(0.0, ge=0, description="Lifetime CO2 credit in kg")
    account_status: Literal["active", "suspended"] = Field("active")
    last_activity_date: Optional[datetime] = None


class RecyclingActivity(BaseModel):
    """
    One recorded recycling event, immutable once written
    Collection: "recycling_activities"
    """
    user_id: str = Field(..., description="Owning user id")
    material: Material = Field(..., description="Material category")
    quantity: int = Field(1, ge=1, description="Number of items")
    points: int = Field(..., ge=0, description="Points awarded at creation time")
    co2_impact: float = Field(..., ge=0, description="CO2 credited in kg at creation time")
    location: str = Field("Campus Scanner", description="Where the item was dropped off")
    barcode: Optional[str] = Field(None, description="Scanned code used for de-duplication")
    timestamp: datetime = Field(..., description="When the event was recorded (UTC)")
    verified: bool = Field(True)


class VoucherTemplate(BaseModel):
    """
    Catalogue entry a voucher is minted from
    Collection: "voucher_templates"
    """
    name: str = Field(..., description="Voucher title")
    points_cost: int = Field(..., ge=1, description="Points deducted when generated")
    discount_type: Literal["percentage", "fixed_amount", "free_item"] = Field("percentage")
    discount_value: float = Field(0, ge=0, description="Percent or currency amount")
    vendor_name: str = Field(..., description="Partner honouring the voucher")
    category: str = Field("general", description="Catalogue grouping")
    terms_conditions: Optional[str] = None
    inventory: Optional[int] = Field(None, ge=0, description="Remaining stock; None means unlimited")
    valid_days: int = Field(30, ge=1, description="Days a generated voucher stays valid")
    is_active: bool = Field(True, description="Whether the template can be generated")


class Voucher(BaseModel):
    """
    A generated voucher owned by a user
    Collection: "vouchers"
    """
    user_id: str
    template_id: str
    template_name: str
    voucher_code: str = Field(..., min_length=1)
    status: Literal["active", "redeemed"] = Field("active", description="Stored status; expiry is derived")
    discount_type: str
    discount_value: float
    vendor_name: str
    category: Optional[str] = None
    terms_conditions: Optional[str] = None
    points_cost: int = Field(..., ge=0)
    generated_at: datetime
    expires_at: datetime
    redeemed_at: Optional[datetime] = None
    redeemed_by: Optional[str] = None


class Transaction(BaseModel):
    """
    Append-only points audit trail
    Collection: "transactions"
    """
    user_id: str
    type: Literal["recycling", "voucher_purchase", "voucher_redemption"]
    amount: int = Field(0, description="Signed points change")
    description: str
    activity_id: Optional[str] = None
    voucher_id: Optional[str] = None
    vendor_id: Optional[str] = None
    timestamp: datetime


class University(BaseModel):
    """
    Collection: "universities"
    """
    name: str
    location: Optional[str] = None
    student_count: int = Field(0, ge=0)
    total_points: int = Field(0, ge=0)
    total_items_recycled: int = Field(0, ge=0)
    total_co2_saved: float = Field(0.0, ge=0)


class ResidenceHall(BaseModel):
    """
    Collection: "residence_halls"
    """
    name: str
    university: Optional[str] = None
    member_count: int = Field(0, ge=0)
    total_points: int = Field(0, ge=0)
    total_items_recycled: int = Field(0, ge=0)


# Results

class UserStats(BaseModel):
    user_id: str
    points_balance: int
    total_points_earned: int
    total_points_spent: int
    total_items_recycled: int
    total_co2_saved: float


class EventResult(BaseModel):
    ok: bool = True
    activity_id: str
    material: Material
    quantity: int
    points: int
    co2_impact: float
    new_balance: int
    total_items: int
    total_co2: float


class EnvironmentalStats(BaseModel):
    total_co2_saved: float = 0.0
    impact_score: float = 0.0
    material_breakdown: Dict[str, float] = Field(default_factory=dict)
    total_items: int = 0
    days_active: int = 0


class VerifyResult(BaseModel):
    valid: bool
    reason: Optional[str] = None
    message: str
    voucher_id: Optional[str] = None
    voucher: Optional[dict] = None
