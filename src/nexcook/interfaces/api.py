import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from nexcook.domain.controller import CookingController
from nexcook.domain.errors import ModuleNotFound, ValidationError
from nexcook.domain.gateway import SendResult
from nexcook.domain.recipes import Customization
from nexcook.infra.config import DeviceConfig, load_config
from nexcook.interfaces.schemas import (
    ClearCommandsRequest,
    CookingStartRequest,
    EnqueueRequest,
    ModuleDeltasRequest,
)

logger = logging.getLogger(__name__)


def _result_or_raise(result: SendResult, **extra) -> dict:
    if not result.success:
        status = 400 if result.error_type == "validation" else 500
        raise HTTPException(status_code=status, detail=result.error or "Failed to reach cooking system")
    return {"success": True, "message": result.message, **extra}


def create_app(
    config: Optional[DeviceConfig] = None,
    config_path: Optional[str] = None,
    controller: Optional[CookingController] = None,
    autostart: bool = True,
) -> FastAPI:
    if controller is None:
        cfg = config if config is not None else load_config(config_path)
        controller = CookingController(cfg)
    cfg = controller.config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Attach the event loop for SSE, then own the controller's threads."""
        controller.attach_event_loop(asyncio.get_running_loop())
        if autostart:
            controller.start()
        try:
            yield
        finally:
            if autostart:
                controller.shutdown()

    app = FastAPI(title=f"Nexcook Device {cfg.device_id}", lifespan=lifespan)
    app.state.controller = controller
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Every response, errors included, carries a success flag.
    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def body_error(request: Request, exc: RequestValidationError):
        errors = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ()) if p != 'body')}: {e.get('msg')}"
            for e in exc.errors()
        )
        return JSONResponse(status_code=400, content={"success": False, "error": f"Invalid request: {errors}"})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    # ---------------------------------------------------
    # Relay boundary
    # ---------------------------------------------------
    @app.post("/api/cooking/start")
    def cooking_start(payload: CookingStartRequest):
        customization = payload.customization.model_dump() if payload.customization else None
        result = controller.start_recipe(payload.recipe.id, customization)
        return _result_or_raise(
            result,
            message="Recipe sent to ESP32. Waiting for commands...",
            recipeSent=result.sent,
        )

    @app.get("/api/esp32/commands")
    def esp32_commands():
        commands = controller.gateway.poll_commands()
        return {"success": True, "commands": [c.to_dict() for c in commands]}

    @app.post("/api/esp32/clear")
    def esp32_clear(payload: Optional[ClearCommandsRequest] = None):
        ids = payload.commandIds if payload is not None else None
        count = controller.gateway.acknowledge(ids)
        return {"success": True, "message": "Commands marked as processed", "cleared": count}

    @app.post("/api/cooking/emergency-stop")
    def emergency_stop():
        result = controller.emergency_stop()
        return _result_or_raise(result)

    # ---------------------------------------------------
    # Status
    # ---------------------------------------------------
    @app.get("/status")
    def status():
        return {"success": True, **controller.get_status()}

    @app.get("/events/sse")
    async def sse():
        queue: asyncio.Queue = asyncio.Queue()
        controller.subscribe_sse(queue)
        await queue.put(json.dumps(controller.get_status()))

        async def event_generator():
            try:
                while True:
                    data = await queue.get()
                    yield f"data: {data}\n\n"
            finally:
                controller.unsubscribe_sse(queue)

        return StreamingResponse(event_generator(), media_type="text/event-stream")

    # ---------------------------------------------------
    # Modules
    # ---------------------------------------------------
    @app.get("/api/modules")
    def list_modules():
        return {"success": True, "modules": [m.to_dict() for m in controller.modules.list()]}

    @app.get("/api/modules/{module_id}")
    def get_module(module_id: str):
        module = controller.modules.get(module_id)
        if module is None:
            raise HTTPException(status_code=404, detail=f"Module '{module_id}' not found")
        return {"success": True, "module": module.to_dict()}

    @app.post("/api/modules/refill-all")
    def refill_all():
        modules = controller.refill_all()
        return {"success": True, "modules": [m.to_dict() for m in modules]}

    @app.post("/api/modules/deltas")
    def module_deltas(payload: ModuleDeltasRequest):
        result = controller.send_module_deltas([d.model_dump() for d in payload.deltas])
        return _result_or_raise(result, sent=result.sent)

    @app.post("/api/modules/{module_id}/refill")
    def refill(module_id: str):
        try:
            module = controller.refill(module_id)
        except ModuleNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        return {"success": True, "module": module.to_dict()}

    # ---------------------------------------------------
    # Recipes
    # ---------------------------------------------------
    @app.get("/api/recipes")
    def list_recipes(category: Optional[str] = None, q: Optional[str] = None):
        if q:
            recipes = controller.recipes.search(q)
        else:
            recipes = controller.recipes.list()
        if category:
            recipes = [r for r in recipes if r.category == category]
        return {"success": True, "recipes": [r.to_dict() for r in recipes]}

    @app.get("/api/recipes/{recipe_id}")
    def get_recipe(recipe_id: str):
        recipe = controller.recipes.get(recipe_id)
        if recipe is None:
            raise HTTPException(status_code=404, detail=f"Recipe '{recipe_id}' not found")
        return {"success": True, "recipe": recipe.to_dict()}

    # ---------------------------------------------------
    # Cooking queue
    # ---------------------------------------------------
    @app.get("/api/queue")
    def queue_state():
        return {"success": True, **controller.queue.state()}

    @app.post("/api/queue")
    def enqueue(payload: EnqueueRequest):
        customization = (
            Customization(**payload.customization.model_dump()) if payload.customization else Customization()
        )
        try:
            item = controller.queue.enqueue(payload.recipeId, payload.quantity, customization)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return {"success": True, "item": item.to_dict()}

    @app.delete("/api/queue/{item_id}")
    def dequeue(item_id: str):
        if not controller.queue.dequeue(item_id):
            raise HTTPException(status_code=404, detail=f"Queue item '{item_id}' not found")
        return {"success": True}

    @app.delete("/api/queue")
    def clear_queue():
        controller.queue.clear()
        return {"success": True}

    @app.post("/api/queue/start")
    def start_queue():
        started = controller.queue.start()
        if not started:
            raise HTTPException(status_code=400, detail="Queue is empty or already cooking")
        return {"success": True, **controller.queue.state()}

    @app.post("/api/queue/stop")
    def stop_queue():
        stopped = controller.queue.stop()
        return {"success": True, "stopped": stopped}

    return app
