from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional
import socket

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn

from agent_orchestration.core.config import configure_logging, load_config
from agent_orchestration.core.errors import (
    AlreadyRunningError,
    CapabilitySchemaError,
    InteractionAlreadyResolvedError,
    InvalidInputError,
    InvalidWorkflowStateError,
    NotFoundError,
    OrchestrationError,
    PlanningFailedError,
    SystemNotInitializedError,
)
from agent_orchestration.core.system import OrchestrationSystem

# Order matters: UnknownPlanAgentError is both a planning and a not-found error
ERROR_STATUS = [
    (PlanningFailedError, 422),
    (NotFoundError, 404),
    (AlreadyRunningError, 409),
    (InvalidWorkflowStateError, 409),
    (InteractionAlreadyResolvedError, 409),
    (CapabilitySchemaError, 422),
    (InvalidInputError, 422),
    (SystemNotInitializedError, 503),
]


class PlanRequest(BaseModel):
    request: str
    context: Dict[str, Any] = {}


class InteractionResponse(BaseModel):
    response: Any = None


class KnowledgeDocument(BaseModel):
    content: str
    metadata: Dict[str, Any] = {}


def status_for(error: OrchestrationError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


def check_service(address: str) -> str:
    """Report whether host:port accepts TCP connections"""
    host, _, port = address.rpartition(":")
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(2)
        result = sock.connect_ex((host or 'localhost', int(port)))
        sock.close()
        return "healthy" if result == 0 else "unhealthy"
    except (OSError, ValueError):
        return "unhealthy"


def create_app(system: Optional[OrchestrationSystem] = None) -> FastAPI:
    if system is None:
        config = load_config()
        configure_logging(config.get('log_level', 'INFO'))
        system = OrchestrationSystem(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await system.initialize()
        yield
        await system.shutdown()

    app = FastAPI(title="Agent Orchestration API", version="1.0.0", lifespan=lifespan)
    app.state.system = system

    @app.exception_handler(OrchestrationError)
    async def orchestration_error_handler(request: Request, exc: OrchestrationError):
        return JSONResponse(
            status_code=status_for(exc),
            content={"error": exc.code, "detail": exc.message}
        )

    @app.get("/health")
    async def health_check():
        """
        Simple health check endpoint
        """
        services = {}
        kafka_servers = system.config.get('kafka_servers')
        if kafka_servers:
            for address in kafka_servers.split(","):
                services[f"kafka:{address.strip()}"] = check_service(address.strip())

        healthy_services = sum(1 for s in services.values() if s == "healthy")
        healthy = system.is_initialized and healthy_services == len(services)

        return {
            "status": "healthy" if healthy else "degraded",
            "timestamp": datetime.now().isoformat(),
            "initialized": system.is_initialized,
            "services": services,
            "summary": f"{healthy_services}/{len(services)} services healthy",
            "framework": "Agent Orchestration v1.0.0"
        }

    @app.get("/")
    async def root():
        return {"message": "Agent Orchestration API", "status": "running"}

    @app.post("/workflows")
    async def plan_workflow(body: PlanRequest):
        workflow = await system.plan_workflow(body.request, body.context)
        return workflow.to_dict()

    @app.post("/requests")
    async def process_request(body: PlanRequest):
        result = await system.process_user_request(body.request, body.context)
        return {
            "workflow_id": result["workflow_id"],
            "status": result["status"].value,
            "workflow": result["workflow"].to_dict()
        }

    @app.get("/workflows/{workflow_id}")
    async def get_workflow(workflow_id: str):
        return system.get_workflow(workflow_id).to_dict()

    @app.get("/workflows/{workflow_id}/status")
    async def get_workflow_status(workflow_id: str):
        status = await system.get_workflow_status(workflow_id)
        return {"workflow_id": workflow_id, "status": status.value}

    @app.get("/workflows/{workflow_id}/events")
    async def get_workflow_events(workflow_id: str):
        system.get_workflow(workflow_id)
        return [event.to_dict() for event in system.get_workflow_events(workflow_id)]

    @app.post("/workflows/{workflow_id}/execute")
    async def execute_workflow(workflow_id: str):
        await system.execute_workflow(workflow_id)
        return {"workflow_id": workflow_id,
                "status": (await system.get_workflow_status(workflow_id)).value}

    @app.post("/workflows/{workflow_id}/pause")
    async def pause_workflow(workflow_id: str):
        await system.pause_workflow(workflow_id)
        return {"workflow_id": workflow_id, "status": "paused"}

    @app.post("/workflows/{workflow_id}/resume")
    async def resume_workflow(workflow_id: str):
        await system.resume_workflow(workflow_id)
        return {"workflow_id": workflow_id,
                "status": (await system.get_workflow_status(workflow_id)).value}

    @app.post("/workflows/{workflow_id}/cancel")
    async def cancel_workflow(workflow_id: str):
        await system.cancel_workflow(workflow_id)
        return {"workflow_id": workflow_id, "status": "cancelled"}

    @app.get("/agents")
    async def list_agents(domain: Optional[str] = None):
        agents = system.get_agents_by_domain(domain) if domain else system.get_available_agents()
        return [agent.describe() for agent in agents]

    @app.delete("/agents/{agent_id}")
    async def unregister_agent(agent_id: str):
        system.unregister_agent(agent_id)
        return {"agent_id": agent_id, "unregistered": True}

    @app.get("/interactions")
    async def list_interactions(workflow_id: Optional[str] = None):
        return [i.to_dict() for i in system.get_pending_interactions(workflow_id)]

    @app.post("/interactions/{interaction_id}/respond")
    async def respond_to_interaction(interaction_id: str, body: InteractionResponse):
        system.respond_to_human_interaction(interaction_id, body.response)
        return {"interaction_id": interaction_id, "status": "completed"}

    @app.post("/interactions/{interaction_id}/cancel")
    async def cancel_interaction(interaction_id: str):
        system.cancel_human_interaction(interaction_id)
        return {"interaction_id": interaction_id, "status": "cancelled"}

    @app.post("/knowledge")
    async def add_knowledge(body: KnowledgeDocument):
        return {"id": system.add_knowledge(body.content, body.metadata)}

    @app.get("/knowledge/search")
    async def search_knowledge(q: str, limit: int = 10):
        if limit < 1:
            raise HTTPException(status_code=400, detail="limit must be positive")
        return system.search_knowledge(q, limit)

    @app.get("/metrics")
    async def metrics():
        return system.get_system_metrics()

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
