"""
Tool registry for the Sia agent.

Declares the three tools offered to the model (requestLocation,
validateLocation, submitQualification), their input schemas and their
deterministic execution. Tools only return data; writing results back
into the conversation is the orchestration loop's job.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Type

from langchain_core.utils.json_schema import dereference_refs
from pydantic import BaseModel, ValidationError

from sia_qualifier.guardrails.geographic_validator import GeographicValidator
from sia_qualifier.guardrails.neighborhood_matcher import NeighborhoodMatcher
from sia_qualifier.models.schemas import (
    LeadQualification,
    Location,
    QualificationInput,
    RequestLocationInput,
    TurnSettings,
    ValidateLocationInput,
)

logger = logging.getLogger(__name__)

REQUEST_LOCATION = "requestLocation"
VALIDATE_LOCATION = "validateLocation"
SUBMIT_QUALIFICATION = "submitQualification"


class InputSchemaError(Exception):
    """Tool-call arguments do not match the tool's input schema."""

    def __init__(self, tool_name: str, message: str, details: Optional[list] = None):
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name
        self.message = message
        self.details = details or []


class UnknownToolError(Exception):
    pass


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_model: Type[BaseModel]
    execute: Callable[[BaseModel], Dict[str, Any]]

    def to_openai_tool(self) -> Dict[str, Any]:
        """Function-calling schema understood by every LangChain chat model."""
        schema = dereference_refs(self.input_model.model_json_schema())
        schema.pop("$defs", None)
        schema.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": schema,
            },
        }


class ToolRegistry:
    """Holds tool definitions and runs them by name."""

    def __init__(self, tools: Iterable[ToolDefinition]):
        self._tools: Dict[str, ToolDefinition] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise ValueError(f"Duplicate tool name: {tool.name}")
            self._tools[tool.name] = tool

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolDefinition:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(f"Tool '{name}' is not registered") from None

    def enabled_tools(self, turn_settings: TurnSettings) -> List[ToolDefinition]:
        """Tools offered to the model for a turn; requestLocation is always on."""
        disabled = set()
        if not turn_settings.enable_validate_location_tool:
            disabled.add(VALIDATE_LOCATION)
        if not turn_settings.enable_submit_qualification_tool:
            disabled.add(SUBMIT_QUALIFICATION)
        return [tool for name, tool in self._tools.items() if name not in disabled]

    def execute(self, name: str, raw_input: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate the arguments and run a tool.

        Args:
            name: Tool name requested by the model
            raw_input: Parsed JSON arguments

        Returns:
            Tool output (JSON-serializable dict)

        Raises:
            UnknownToolError: If no tool has this name
            InputSchemaError: If the arguments do not fit the input schema
        """
        tool = self.get(name)
        try:
            payload = tool.input_model.model_validate(raw_input or {})
        except ValidationError as e:
            raise InputSchemaError(
                name,
                "Argumentos inválidos para a ferramenta",
                details=e.errors(include_url=False, include_context=False),
            ) from e

        logger.info(f"[TOOLS] Executando {name} com {payload.model_dump(mode='json')}")
        return tool.execute(payload)


# -----------------------------
# TOOLS
# -----------------------------
def request_location(data: RequestLocationInput) -> Dict[str, Any]:
    return {
        "type": "location_request",
        "message": data.message,
        "status": "awaiting_selection",
    }


def build_qualification(data: QualificationInput, matcher: NeighborhoodMatcher) -> LeadQualification:
    """Echo the collected data into the final record, attaching the neighborhood focus."""
    record = matcher.lookup_exact(data.bairro)
    return LeadQualification(
        lead_qualified=data.lead_qualified,
        owner_type=data.owner_type,
        location=Location(bairro=data.bairro, cidade=data.cidade),
        land_size_m2=data.land_size_m2,
        asking_price=data.asking_price,
        legal_status=data.legal_status,
        has_sea_view=data.has_sea_view,
        is_beachfront=data.is_beachfront,
        neighborhood_focus=record.focus if record else None,
        next_step=data.next_step,
    )


def build_tool_registry(validator: GeographicValidator) -> ToolRegistry:
    """Wire the three qualification tools around a geographic validator."""

    def validate_location(data: ValidateLocationInput) -> Dict[str, Any]:
        return validator.validate_location(bairro=data.bairro, cidade=data.cidade)

    def submit_qualification(data: QualificationInput) -> Dict[str, Any]:
        qualification = build_qualification(data, validator.matcher)
        return qualification.model_dump(mode="json", exclude_none=True)

    return ToolRegistry([
        ToolDefinition(
            name=REQUEST_LOCATION,
            description=(
                "Exibe um buscador de endereço na conversa para o usuário pesquisar e "
                "selecionar a localização exata do terreno. Use SEMPRE para coletar a localização."
            ),
            input_model=RequestLocationInput,
            execute=request_location,
        ),
        ToolDefinition(
            name=VALIDATE_LOCATION,
            description=(
                "Valida se o bairro e a cidade do terreno estão na área de atuação da Seazone. "
                "OBRIGATÓRIO antes de prosseguir com a qualificação."
            ),
            input_model=ValidateLocationInput,
            execute=validate_location,
        ),
        ToolDefinition(
            name=SUBMIT_QUALIFICATION,
            description=(
                "Gera a saída estruturada da qualificação. Use somente quando TODOS os 5 dados "
                "(localização, tamanho, valor, situação jurídica, diferencial) forem coletados."
            ),
            input_model=QualificationInput,
            execute=submit_qualification,
        ),
    ])
