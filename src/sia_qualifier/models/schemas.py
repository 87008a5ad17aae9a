"""
Pydantic schemas for the Sia Qualifier Agent.

Covers the qualification output, tool inputs, token accounting,
per-turn settings and the request/response bodies of the HTTP API.
"""

from enum import Enum
from typing import FrozenSet, List, Optional

from pydantic import BaseModel, Field

from sia_qualifier.config import settings


class OwnerType(str, Enum):
    """Who is offering the land."""
    CORRETOR = "corretor"
    PROPRIETARIO = "proprietario"


class NextStep(str, Enum):
    """Next commercial action for a qualified (or not) lead."""
    AGENDAR_REUNIAO = "agendar_reuniao"
    ENVIAR_ESTUDO = "enviar_estudo"
    DISQUALIFIED = "disqualified"


class NeighborhoodRecord(BaseModel):
    """One allow-listed neighborhood."""

    model_config = {"frozen": True}

    canonical_key: str
    focus: str
    description: str
    aliases: FrozenSet[str] = frozenset()


class Location(BaseModel):
    bairro: str
    cidade: str


# -----------------------------
# Tool inputs
# -----------------------------
class RequestLocationInput(BaseModel):
    message: str = Field(description="Mensagem curta pedindo ao usuário para buscar o endereço do terreno")


class ValidateLocationInput(BaseModel):
    bairro: str = Field(description="Nome do bairro informado na localização selecionada")
    cidade: str = Field(description="Nome da cidade informada na localização selecionada")


class QualificationInput(BaseModel):
    lead_qualified: bool = Field(description="Se o terreno está qualificado para a Seazone")
    owner_type: OwnerType = Field(description="corretor ou proprietario")
    bairro: str = Field(description="Bairro validado do terreno")
    cidade: str = Field(description="Cidade do terreno")
    land_size_m2: float = Field(description="Tamanho do terreno em m²")
    asking_price: float = Field(description="Valor pedido em R$")
    legal_status: str = Field(description="Situação jurídica (escritura pública)")
    has_sea_view: bool = Field(description="Se o terreno tem vista para o mar")
    is_beachfront: bool = Field(description="Se o terreno é frente mar")
    next_step: NextStep = Field(description="agendar_reuniao, enviar_estudo ou disqualified")


class LeadQualification(BaseModel):
    """
    Final structured qualification record.

    Produced once per successful submitQualification call and never
    mutated afterwards.
    """

    model_config = {"frozen": True}

    lead_qualified: bool
    owner_type: OwnerType
    location: Location
    land_size_m2: float
    asking_price: float
    legal_status: str
    has_sea_view: bool
    is_beachfront: bool
    neighborhood_focus: Optional[str] = None
    next_step: NextStep


# -----------------------------
# Token accounting
# -----------------------------
class TokenUsage(BaseModel):
    """Field-wise additive token counters."""

    prompt: int = 0
    completion: int = 0
    total: int = 0
    reasoning: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt=self.prompt + other.prompt,
            completion=self.completion + other.completion,
            total=self.total + other.total,
            reasoning=self.reasoning + other.reasoning,
        )


class CostEstimate(BaseModel):
    input_cost: float = 0.0
    output_cost: float = 0.0
    total_cost: float = 0.0


# -----------------------------
# Turn settings
# -----------------------------
class TurnSettings(BaseModel):
    """Sampling parameters and tool switches applied to a single turn."""

    model: str = Field(default_factory=lambda: settings.default_model)
    temperature: float = Field(default_factory=lambda: settings.temperature, ge=0.0, le=2.0)
    top_p: float = Field(default_factory=lambda: settings.top_p, gt=0.0, le=1.0)
    max_tokens: Optional[int] = Field(default_factory=lambda: settings.max_tokens, gt=0)
    enable_validate_location_tool: bool = True
    enable_submit_qualification_tool: bool = True
    system_prompt: Optional[str] = None


# -----------------------------
# Places
# -----------------------------
class Coordinates(BaseModel):
    lat: float
    lng: float


class PlaceSuggestion(BaseModel):
    place_id: str
    main_text: str = ""
    secondary_text: str = ""
    full_text: str = ""


class PlaceDetails(BaseModel):
    display_name: str = ""
    formatted_address: str = ""
    neighborhood: str = ""
    city: str = ""
    state: str = ""
    location: Optional[Coordinates] = None


class LocationSelection(BaseModel):
    """Address picked in the assisted search, sent back as a user message."""

    formatted_address: str
    neighborhood: str = ""
    city: str = ""
    state: str = ""


# -----------------------------
# API bodies
# -----------------------------
class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    conversation_id: Optional[str] = None
    settings: Optional[TurnSettings] = None


class LocationRequest(BaseModel):
    selection: LocationSelection
    settings: Optional[TurnSettings] = None


class EditMessageRequest(BaseModel):
    text: str
    settings: Optional[TurnSettings] = None


class RegenerateRequest(BaseModel):
    settings: Optional[TurnSettings] = None


class PlacesSuggestRequest(BaseModel):
    query: str = ""


class PlacesSuggestResponse(BaseModel):
    suggestions: List[PlaceSuggestion] = []
