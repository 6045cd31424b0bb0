"""
Database Schemas for the E-Waste Marketplace

Each Pydantic model corresponds to a MongoDB collection (lowercased class name).
"""
from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal
from datetime import datetime

Role = Literal["user", "collector", "organization", "admin"]

Category = Literal["Electronics", "Appliances", "Computers", "Mobile Devices", "Batteries", "Other"]
BulkCategory = Literal["Electronics", "Appliances", "Computers", "Mobile Devices", "Batteries", "Mixed", "Other"]

Condition = Literal["working", "not working", "damaged"]
BulkCondition = Literal["working", "not working", "damaged", "mixed"]

EWasteStatus = Literal["pending", "collected", "cancelled"]
# "reserved" is only ever set outside the API (e.g. by an operator in the database)
BulkStatus = Literal["available", "reserved", "sold"]


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt hash")
    role: Role = Field("user", description="Access role")
    phone: Optional[str] = None
    address: Optional[str] = None
    organization_name: Optional[str] = Field(None, description="Only for organization accounts")
    profile_picture: Optional[str] = None


class EWaste(BaseModel):
    """Individual item posted by a user. Collection: "ewaste"."""
    owner: str = Field(..., description="Creating user id")
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    category: Category
    condition: Condition
    quantity: int = Field(1, ge=1)
    price: Optional[float] = Field(None, ge=0, description="None means free")
    location: Optional[str] = None
    images: List[str] = []
    status: EWasteStatus = "pending"
    collector: Optional[str] = None
    collected_at: Optional[datetime] = None


class BulkEWaste(BaseModel):
    """Weighed lot posted by a collector. Collection: "bulkewaste"."""
    owner: str = Field(..., description="Posting collector id")
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    category: BulkCategory = "Mixed"
    condition: BulkCondition = "mixed"
    weight_in_kg: float = Field(..., ge=0.1)
    price_per_kg: Optional[float] = Field(None, ge=0)
    total_price: Optional[float] = Field(None, ge=0)
    location: Optional[str] = None
    images: List[str] = Field([], max_length=5, description="At most 5 photos per lot")
    status: BulkStatus = "available"
    sold_to: Optional[str] = None
    sold_at: Optional[datetime] = None
