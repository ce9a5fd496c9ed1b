"""Dependency injection for FastAPI endpoints"""

from fastapi import Depends, Request
from sqlalchemy.orm import sessionmaker

from bnpl_scheduler.domain.clock import Clock, SystemClock
from bnpl_scheduler.infrastructure.clients.gateway import Gateway, GatewayClient
from bnpl_scheduler.infrastructure.database.session import get_session_factory
from bnpl_scheduler.services.batch import BatchProcessor
from bnpl_scheduler.services.early_payment import EarlyPaymentService
from bnpl_scheduler.services.payment_methods import PaymentMethodService
from bnpl_scheduler.services.scheduler import EnterpriseScheduler


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_gateway() -> Gateway:
    """Provide payment gateway client instance"""
    return GatewayClient()


def get_clock() -> Clock:
    return SystemClock()


def get_scheduler(
    session_factory: sessionmaker = Depends(get_session_factory),
    gateway: Gateway = Depends(get_gateway),
    clock: Clock = Depends(get_clock),
) -> EnterpriseScheduler:
    return EnterpriseScheduler(session_factory, gateway, clock)


def get_batch_processor(
    request: Request,
    session_factory: sessionmaker = Depends(get_session_factory),
    gateway: Gateway = Depends(get_gateway),
    clock: Clock = Depends(get_clock),
) -> BatchProcessor:
    """One processor per app so its reentrancy guard covers every caller, ticker included"""
    processor = getattr(request.app.state, "batch_processor", None)
    if processor is None:
        processor = BatchProcessor(session_factory, gateway, clock)
        request.app.state.batch_processor = processor
    return processor


def get_early_payment_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    gateway: Gateway = Depends(get_gateway),
    clock: Clock = Depends(get_clock),
) -> EarlyPaymentService:
    return EarlyPaymentService(session_factory, gateway, clock)


def get_payment_method_service(
    session_factory: sessionmaker = Depends(get_session_factory),
) -> PaymentMethodService:
    return PaymentMethodService(session_factory)
