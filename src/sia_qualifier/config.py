"""
Configuration module for the Sia Qualifier Agent.

This module handles:
- Environment variables loading
- LLM provider credentials and sampling defaults
- Business rules tables (neighborhoods, target city, pricing)
"""

from enum import Enum
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv()


class LLMProvider(str, Enum):
    """Available LLM providers."""
    OPENAI = "openai"
    GEMINI = "gemini"
    GROQ = "groq"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # LLM Configuration
    openai_api_key: Optional[str] = None
    google_api_key: Optional[str] = None
    groq_api_key: Optional[str] = None
    default_model: str = "gpt-4.1"
    temperature: float = 0.4
    top_p: float = 1.0
    max_tokens: Optional[int] = None
    max_steps: int = 5

    # Places (address picker)
    google_places_api_key: Optional[str] = None
    places_timeout_seconds: float = 10.0

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # MLflow Configuration
    mlflow_enabled: bool = True
    mlflow_tracking_uri: str = "./mlflow"
    mlflow_experiment_name: str = "sia-qualifier"

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = Settings()


# Business Rules Constants
TARGET_CITY = "Florianópolis"

# Normalized (lowercase, no accents) spellings accepted as the target city
CITY_VARIANTS = frozenset({
    "florianopolis",
    "florianopolis sc",
    "florianopolis - sc",
    "florianopolis/sc",
    "floripa",
    "fpolis",
})

FALLBACK_MAP_URL = "http://google.com/maps/place/florianopolis"

NEIGHBORHOODS = {
    "centro": {
        "focus": "Studios e Comercial",
        "description": "Coração administrativo e comercial da cidade, alta demanda por studios compactos.",
        "aliases": ["centro de florianópolis", "centro histórico", "centro floripa"],
    },
    "itacorubi": {
        "focus": "Público universitário e tech",
        "description": "Próximo à UDESC e ao polo tecnológico, demanda estável de estudantes e profissionais.",
        "aliases": ["itacurubi", "bairro itacorubi"],
    },
    "campeche": {
        "focus": "Rentabilidade de curto prazo / Airbnb",
        "description": "Bairro com forte apelo turístico no sul da ilha, ideal para locação de curta temporada.",
        "aliases": ["praia do campeche", "campeche sul da ilha"],
    },
    "jurerê internacional": {
        "focus": "Luxo e alto padrão",
        "description": "Região nobre no norte da ilha, foco em empreendimentos de luxo e alta rentabilidade.",
        "aliases": ["jurerê", "jurerê inter", "jurerê internacional norte"],
    },
}


# Models offered by the playground
AVAILABLE_MODELS = [
    {"id": "gpt-4.1", "name": "GPT-4.1", "provider": LLMProvider.OPENAI.value},
    {"id": "gpt-5.2", "name": "GPT-5.2", "provider": LLMProvider.OPENAI.value},
    {"id": "gemini-3-flash-preview", "name": "Gemini 3 Flash", "provider": LLMProvider.GEMINI.value},
    {"id": "llama-3.3-70b-versatile", "name": "Llama 3.3 70B", "provider": LLMProvider.GROQ.value},
]

# Pricing per 1 million tokens (USD)
MODEL_PRICING = {
    "gpt-4.1": {"input": 2.00, "cached": 0.50, "output": 8.00},
    "gpt-5.2": {"input": 1.75, "cached": 0.175, "output": 14.00},
    "gemini-3-flash-preview": {"input": 0.50, "cached": None, "output": 3.00},
    "llama-3.3-70b-versatile": {"input": 0.59, "cached": None, "output": 0.79},
}
