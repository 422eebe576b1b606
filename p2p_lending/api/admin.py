"""
Admin endpoints (scheduler, time simulation, settings, dashboard)
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import LendingSystem, get_lending_system
from .schemas import SimulateTimeRequest, UpdateSettingsRequest, credit_report_response


router = APIRouter()


@router.post("/scheduler/run")
def run_scheduler(system: LendingSystem = Depends(get_lending_system)):
    """Evaluate all closed repayment windows now"""
    return system.scheduler.run(triggered_by="admin").to_dict()


@router.post("/time/simulate")
def simulate_time(
    request: SimulateTimeRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Advance the simulated clock and run the scheduler"""
    report = system.scheduler.simulate_time(request.days)
    return {"now": system.clock.now().isoformat(), "report": report.to_dict()}


@router.get("/settings")
def get_settings(system: LendingSystem = Depends(get_lending_system)):
    """Lending policy applied to new loans"""
    return system.policy_store.get_policy().to_dict()


@router.put("/settings")
def update_settings(
    request: UpdateSettingsRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Change the lending policy for loans created from now on"""
    changes = request.model_dump(exclude_none=True, exclude={"updated_by"})
    policy = system.policy_store.update_policy(changes, updated_by=request.updated_by)
    return policy.to_dict()


@router.get("/dashboard")
def get_dashboard(system: LendingSystem = Depends(get_lending_system)):
    """Platform statistics"""
    return system.dashboard()


@router.get("/credit-reports")
def list_credit_reports(
    borrower_id: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Default reports submitted to the credit bureau"""
    reports = system.loan_manager.list_credit_reports(borrower_id=borrower_id)
    return {"reports": [credit_report_response(r) for r in reports]}


@router.get("/audit/verify")
def verify_audit_trail(system: LendingSystem = Depends(get_lending_system)):
    """Verify the audit hash chain"""
    return system.audit_trail.verify_integrity()


@router.get("/audit/events")
def list_audit_events(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 50,
    system: LendingSystem = Depends(get_lending_system)
):
    """Recent audit events, or the events of one entity"""
    if entity_type and entity_id:
        events = system.audit_trail.get_events_for_entity(entity_type, entity_id, limit=limit)
    else:
        events = system.audit_trail.get_recent_events(limit)
    return {"events": [event.to_dict() for event in events]}
