"""FastAPI dependencies resolving services from the application container."""
from fastapi import Request

from creditledger.container import Container
from creditledger.services.auto_top_up import AutoTopUpService
from creditledger.services.credit_ledger import CreditLedger
from creditledger.services.meter_event_queue import MeterEventQueue
from creditledger.services.usage_reporting import UsageReportingService


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_ledger(request: Request) -> CreditLedger:
    return get_container(request).ledger


def get_usage_reporting(request: Request) -> UsageReportingService:
    return get_container(request).usage_reporting


def get_queue(request: Request) -> MeterEventQueue:
    return get_container(request).queue


def get_auto_top_up(request: Request) -> AutoTopUpService:
    return get_container(request).auto_top_up
