from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ambros import __version__
from ambros.app_container import AppServices
from ambros.domain.commands import CommandRecord
from ambros.errors import AmbrosError, get_catalog_entry


class CommandView(BaseModel):
    command_id: str
    command: str
    name: str
    arguments: List[str]
    status: bool
    output: str
    error: str
    tags: List[str]
    category: str
    variables: Dict[str, str]
    created_at: Optional[str] = None
    terminated_at: Optional[str] = None


class ChainView(BaseModel):
    name: str
    description: str
    commands: List[str]
    conditional: bool
    parallel: bool
    retry_limit: int
    timeout_sec: float


class PluginView(BaseModel):
    name: str
    version: str
    description: str
    type: str
    enabled: bool
    source: str
    commands: List[str]
    hooks: List[str]


def _command_view(record: CommandRecord) -> CommandView:
    return CommandView(
        command_id=record.command_id,
        command=record.command_text,
        name=record.name,
        arguments=list(record.arguments),
        status=record.status,
        output=record.output,
        error=record.error,
        tags=list(record.tags),
        category=record.category,
        variables=dict(record.variables),
        created_at=record.created_at.isoformat() if record.created_at else None,
        terminated_at=record.terminated_at.isoformat() if record.terminated_at else None,
    )


def create_app(services: AppServices) -> FastAPI:
    app = FastAPI(title="ambros", version=__version__)

    @app.exception_handler(AmbrosError)
    async def _ambros_error(_request: Request, exc: AmbrosError) -> JSONResponse:
        entry = get_catalog_entry(exc.code)
        return JSONResponse(
            status_code=entry.http_status,
            content={"code": exc.code, "title": entry.title, "detail": str(exc)},
        )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__}

    @app.get("/commands", response_model=List[CommandView])
    def list_commands(tag: str = "", limit: int = 50) -> List[CommandView]:
        if limit < 1 or limit > 1000:
            raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")
        if tag:
            records = services.commands.search_by_tag(tag)[:limit]
        else:
            records = services.commands.recent(limit)
        return [_command_view(r) for r in records]

    @app.get("/commands/{command_id}", response_model=CommandView)
    def get_command(command_id: str) -> CommandView:
        return _command_view(services.commands.get(command_id))

    @app.delete("/commands/{command_id}")
    def delete_command(command_id: str) -> Dict[str, Any]:
        services.commands.delete(command_id)
        return {"ok": True, "command_id": command_id}

    @app.get("/chains", response_model=List[ChainView])
    def list_chains() -> List[ChainView]:
        return [ChainView(**spec.to_dict()) for spec in services.chains.list_chains()]

    @app.get("/chains/{name}", response_model=ChainView)
    def get_chain(name: str) -> ChainView:
        return ChainView(**services.chains.get(name).to_dict())

    @app.post("/chains/{name}/dry-run")
    def dry_run_chain(name: str) -> Dict[str, Any]:
        return services.chains.plan(name).to_dict()

    @app.get("/plugins", response_model=List[PluginView])
    def list_plugins() -> List[PluginView]:
        return [
            PluginView(
                name=p.name,
                version=p.manifest.version,
                description=p.manifest.description,
                type=p.manifest.type,
                enabled=p.manifest.enabled,
                source=p.source,
                commands=p.manifest.command_names(),
                hooks=list(p.manifest.hooks),
            )
            for p in services.plugins.discover()
        ]

    return app
