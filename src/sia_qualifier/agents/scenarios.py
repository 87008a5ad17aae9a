"""
Canned conversations for the playground.

Each scenario is a complete conversation that can be loaded into a
session to inspect the results panel without calling a model. Tool
outputs are produced by running the real tools, so a scenario always
reflects the current neighborhood table.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Tuple

from sia_qualifier.agents.tools import (
    REQUEST_LOCATION,
    SUBMIT_QUALIFICATION,
    VALIDATE_LOCATION,
    ToolRegistry,
)
from sia_qualifier.models.messages import Message, Role, TextPart, ToolInvocationPart, ToolState

ToolCall = Tuple[str, Dict[str, Any]]

PICKER_MESSAGE = "Por favor, busque e selecione o endereço exato do terreno no campo abaixo:"


@dataclass(frozen=True)
class Scenario:
    id: str
    title: str
    description: str
    badge: Literal["success", "rejection"]
    # (role, text, tool calls) in conversation order
    script: Tuple[Tuple[Role, str, Tuple[ToolCall, ...]], ...]

    def build_messages(self, registry: ToolRegistry) -> List[Message]:
        """Materialize the script into fresh history messages."""
        messages = []
        for index, (role, text, calls) in enumerate(self.script, start=1):
            message_id = f"{self.id}-{index}"
            if role == Role.USER:
                messages.append(Message.user(text, id=message_id))
                continue

            parts: list = []
            for call_index, (tool_name, tool_input) in enumerate(calls, start=1):
                parts.append(ToolInvocationPart(
                    tool_name=tool_name,
                    call_id=f"tc-{message_id}-{call_index}",
                    input=tool_input,
                    state=ToolState.DONE,
                    output=registry.execute(tool_name, tool_input),
                ))
            parts.append(TextPart(text=text))
            messages.append(Message(id=message_id, role=Role.ASSISTANT, parts=parts))
        return messages


def _user(text: str):
    return (Role.USER, text, ())


def _assistant(text: str, *calls: ToolCall):
    return (Role.ASSISTANT, text, calls)


SCENARIOS: Dict[str, Scenario] = {
    scenario.id: scenario
    for scenario in (
        Scenario(
            id="success-campeche",
            title="Sucesso: Campeche",
            description=(
                "Corretor com terreno de 450m² no Campeche. Localização via Google Places, "
                "validação aprovada, dados coletados um a um, lead qualificado."
            ),
            badge="success",
            script=(
                _user("Oi, sou corretor e tenho um terreno no Campeche pra vocês avaliarem."),
                _assistant(
                    "Ótimo! Por favor, busque e selecione o endereço exato do terreno no campo abaixo para continuarmos.",
                    (REQUEST_LOCATION, {"message": PICKER_MESSAGE}),
                ),
                _user(
                    "📍 Localização selecionada: R. Carlos Sales - Campeche, Florianópolis - SC, Brasil\n"
                    "Bairro: Campeche\nCidade: Florianópolis\nEstado: SC"
                ),
                _assistant(
                    "Localização aprovada! Agora, qual o tamanho do terreno em m²?",
                    (VALIDATE_LOCATION, {"bairro": "Campeche", "cidade": "Florianópolis"}),
                ),
                _user("450m²"),
                _assistant("Qual o valor pedido pelo terreno?"),
                _user("R$ 1.200.000"),
                _assistant("O terreno possui escritura pública?"),
                _user("sim!"),
                _assistant("Esse terreno é frente mar ou tem vista para o mar?"),
                _user("sim, tem vista pro mar"),
                _assistant(
                    "Perfeito, todas as informações foram recebidas! Seu terreno no Campeche, com 450m², "
                    "escritura pública e vista para o mar, está dentro do perfil que buscamos para "
                    "rentabilidade de curta temporada. Vamos agendar uma reunião para avançarmos?",
                    (SUBMIT_QUALIFICATION, {
                        "lead_qualified": True,
                        "owner_type": "corretor",
                        "bairro": "Campeche",
                        "cidade": "Florianópolis",
                        "land_size_m2": 450,
                        "asking_price": 1200000,
                        "legal_status": "Escritura pública",
                        "has_sea_view": True,
                        "is_beachfront": False,
                        "next_step": "agendar_reuniao",
                    }),
                ),
            ),
        ),
        Scenario(
            id="rejection-rio-tavares",
            title="Rejeição: Rio Tavares",
            description=(
                "Proprietário com terreno no Rio Tavares (fora da área de foco). "
                "Sia recusa educadamente após validação geográfica."
            ),
            badge="rejection",
            script=(
                _user("Boa tarde! Sou proprietário de um terreno em Florianópolis"),
                _assistant(
                    "Ótimo! Para começarmos, por favor, busque e selecione o endereço exato do terreno no campo abaixo.",
                    (REQUEST_LOCATION, {"message": PICKER_MESSAGE}),
                ),
                _user(
                    "📍 Localização selecionada: Rio Tavares, Florianópolis - SC, Brasil\n"
                    "Bairro: Rio Tavares\nCidade: Florianópolis\nEstado: SC"
                ),
                _assistant(
                    "No momento, o bairro Rio Tavares não faz parte das áreas de interesse da Seazone em "
                    "Florianópolis. Atuamos principalmente em Centro, Itacorubi, Campeche e Jurerê Internacional.\n"
                    "Veja as regiões no mapa: http://google.com/maps/place/florianopolis\n"
                    "Se tiver outro terreno nessas áreas, posso ajudar na qualificação!",
                    (VALIDATE_LOCATION, {"bairro": "Rio Tavares", "cidade": "Florianópolis"}),
                ),
            ),
        ),
        Scenario(
            id="success-jurere",
            title="Sucesso: Jurerê Internacional",
            description=(
                "Proprietário com terreno frente mar de 1.200m² em Jurerê. "
                "Perfil premium, qualificado para estudo de viabilidade."
            ),
            badge="success",
            script=(
                _user("Olá, sou proprietário de um terreno em Jurerê, frente mar."),
                _assistant(
                    "Olá! Fico muito interessada. Busque o endereço do terreno no campo acima para confirmarmos a localização.",
                    (REQUEST_LOCATION, {"message": "Para confirmar a localização, busque o endereço do terreno:"}),
                ),
                _user(
                    "📍 Localização selecionada: **Jurerê Internacional, Florianópolis - SC, Brasil**\n"
                    "- Bairro: Jurerê Internacional\n- Cidade: Florianópolis\n- Estado: SC"
                ),
                _assistant(
                    "**Jurerê Internacional** aprovado! Perfil premium. Qual a **metragem do terreno**?",
                    (VALIDATE_LOCATION, {"bairro": "Jurerê Internacional", "cidade": "Florianópolis"}),
                ),
                _user("1200m²"),
                _assistant("Ótima metragem. Qual o **valor pedido**?"),
                _user("R$ 8.500.000"),
                _assistant("Valor consistente para Jurerê frente mar. O terreno possui **escritura pública**?"),
                _user("Sim, escritura pública."),
                _assistant("Você mencionou que é **frente mar**. Confirma que também tem **vista para o mar**?"),
                _user("Sim, frente mar com vista total."),
                _assistant(
                    "Qualificação concluída! Terreno **frente mar** em Jurerê Internacional com 1.200m², "
                    "perfil de **alto padrão**. Próximo passo: vamos **enviar um estudo de viabilidade** "
                    "detalhado em até 48h.",
                    (SUBMIT_QUALIFICATION, {
                        "lead_qualified": True,
                        "owner_type": "proprietario",
                        "bairro": "Jurerê Internacional",
                        "cidade": "Florianópolis",
                        "land_size_m2": 1200,
                        "asking_price": 8500000,
                        "legal_status": "Escritura pública",
                        "has_sea_view": True,
                        "is_beachfront": True,
                        "next_step": "enviar_estudo",
                    }),
                ),
            ),
        ),
    )
}


def get_scenario(scenario_id: str) -> Optional[Scenario]:
    return SCENARIOS.get(scenario_id)
