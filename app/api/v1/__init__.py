"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import payslips

api_router = APIRouter()

api_router.include_router(
    payslips.router,
    prefix="/payslips",
    tags=["payslips"]
)
