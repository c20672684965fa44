"""
Database Schemas for the Business Ledger API

Each Pydantic model corresponds to a MongoDB collection. Ids of other
documents (owner, party, earning reference) are stored as strings.
"""
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr
from datetime import datetime

BillStatus = Literal["pending", "due", "paid"]
RowType = Literal["Book", "Pad", "Tag", "Register", "Other", ""]
RowSize = Literal["1/3", "1/4", "1/5", "1/6", "1/8", "1/10", "1/12", "1/16", "Other", ""]
EarningType = Literal["Sales", "Investment", "Other"]
ExpenseCategory = Literal["Food", "Travel", "Equipment", "Other"]
ExpenseType = Literal["Personal", "Professional"]

# Auth
class User(BaseModel):
    email: EmailStr
    name: str
    password_hash: str
    role: Literal["admin", "user"] = "user"

class Session(BaseModel):
    user_id: str
    token: str
    expires_at: datetime

class PasswordReset(BaseModel):
    user_id: str
    token: str
    expires_at: datetime

# Contacts
class Client(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    phone: str = Field(..., pattern=r"^\+?[0-9]{7,15}$")
    createdBy: Optional[str] = None

class Party(BaseModel):
    name: str = Field(..., min_length=1)
    contact: str = ""
    address: str = ""
    createdBy: Optional[str] = None

# Billing
class BillRow(BaseModel):
    id: int = 1
    particulars: str = Field(..., min_length=1)
    type: RowType = ""
    size: RowSize = ""
    customType: str = ""
    customSize: str = ""
    quantity: float = Field(0, ge=0)
    rate: float = Field(0, ge=0)
    total: Optional[float] = Field(None, ge=0, description="Defaults to quantity * rate")

class Bill(BaseModel):
    serialNumber: int
    partyName: str
    date: datetime
    rows: List[BillRow]
    total: float = Field(0, ge=0)
    advance: float = Field(0, ge=0)
    previousBalance: float = Field(0, ge=0)
    due: float = Field(0, ge=0)
    balance: float = 0
    status: BillStatus = "pending"
    note: str = ""
    createdBy: Optional[str] = None

class Work(BaseModel):
    particulars: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    size: str = Field(..., min_length=1)
    party: str
    partyId: str
    dateAndTime: datetime
    quantity: float = Field(..., ge=1)
    rate: float = Field(..., ge=0.01)
    currency: Literal["INR"] = "INR"
    paid: bool = False
    createdBy: Optional[str] = None

# Money in and out
class Earning(BaseModel):
    date: datetime
    amount: float = Field(..., ge=0)
    type: EarningType
    source: str
    reference: Optional[str] = Field(None, description="Id of the bill or work this earning mirrors")
    createdBy: Optional[str] = None

class Expense(BaseModel):
    date: datetime
    description: str = Field(..., min_length=1)
    category: ExpenseCategory
    amount: float = Field(..., ge=0)
    type: ExpenseType
    createdBy: Optional[str] = None

# Email delivery
class OutboxMessage(BaseModel):
    to: EmailStr
    subject: str
    html: str
    status: Literal["pending", "sent", "failed"] = "pending"
    attempts: int = 0
    next_attempt_at: datetime
    last_error: Optional[str] = None
