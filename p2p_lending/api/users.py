"""
User endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import LendingSystem, get_lending_system
from .schemas import CreateUserRequest, UpdateKYCRequest, user_response
from ..users import KYCStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_user(
    request: CreateUserRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Register a lender or borrower"""
    user = system.users.create_user(name=request.name, phone=request.phone, email=request.email)
    return user_response(user)


@router.get("")
def list_users(
    kyc_status: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """List users, optionally by KYC status"""
    status_filter = KYCStatus(kyc_status.lower()) if kyc_status else None
    return {"users": [user_response(u) for u in system.users.list_users(status_filter)]}


@router.get("/{user_id}")
def get_user(
    user_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get user details"""
    user = system.users.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user_response(user)


@router.put("/{user_id}/kyc")
def update_kyc(
    user_id: str,
    request: UpdateKYCRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Update a user's identity verification status"""
    user = system.users.update_kyc_status(user_id, KYCStatus(request.status.lower()),
                                          updated_by=request.updated_by)
    return user_response(user)
