"""
Streamlit playground for the Sia Qualifier Agent.

Thin client over the HTTP API: chat with streamed turns, the address
picker, message edit/delete, turn settings, canned scenarios and a
results panel. All state lives in the API session; this app only keeps
the conversation id and the last session view.
"""

import json
import os
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, Optional, Tuple

import httpx
import streamlit as st

# Configuration
API_URL = os.getenv("SIA_API_URL", "http://localhost:8000")
STREAM_TIMEOUT = httpx.Timeout(120.0, connect=5.0)

TOOL_LABELS = {
    "requestLocation": "📍 Buscador de endereço",
    "validateLocation": "🗺️ Validação geográfica",
    "submitQualification": "📋 Qualificação",
}

# Page config
st.set_page_config(
    page_title="Sia - Qualifier Playground",
    page_icon="🏖️",
    layout="wide",
    initial_sidebar_state="expanded",
)


def init_session_state():
    """Initialize Streamlit session state."""
    if "conversation_id" not in st.session_state:
        st.session_state.conversation_id = None
    if "view" not in st.session_state:
        st.session_state.view = None
    if "suggestions" not in st.session_state:
        st.session_state.suggestions = []


def check_api_health() -> bool:
    try:
        response = httpx.get(f"{API_URL}/health", timeout=5.0)
        return response.status_code == 200
    except httpx.HTTPError:
        return False


def api_json(method: str, path: str, **kwargs) -> Optional[dict]:
    """Call a JSON endpoint, showing API errors in the page."""
    try:
        response = httpx.request(method, f"{API_URL}{path}", timeout=30.0, **kwargs)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as e:
        st.error(f"Erro da API ({e.response.status_code}): {e.response.text}")
    except httpx.HTTPError as e:
        st.error(f"Erro ao comunicar com API: {e}")
    return None


def iter_sse(response: httpx.Response) -> Iterator[Tuple[str, Dict[str, Any]]]:
    """Yield (event, data) pairs from a text/event-stream response."""
    event, data = "message", []
    for line in response.iter_lines():
        if not line:
            if data:
                yield event, json.loads("\n".join(data))
            event, data = "message", []
        elif line.startswith("event:"):
            event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data.append(line[len("data:"):].strip())


# -----------------------------
# TURNS
# -----------------------------
def stream_turn(method: str, path: str, payload: dict):
    """Run a streamed turn, rendering text as it arrives."""
    with st.chat_message("assistant"):
        placeholder = st.empty()
        text = ""
        tools = []
        try:
            with httpx.stream(method, f"{API_URL}{path}", json=payload, timeout=STREAM_TIMEOUT) as response:
                if response.status_code >= 400:
                    response.read()
                    st.error(f"Erro da API ({response.status_code}): {response.text}")
                    return
                for event, data in iter_sse(response):
                    if event == "session":
                        st.session_state.conversation_id = data["conversation_id"]
                    elif event == "text-delta":
                        text += data["text"]
                        placeholder.markdown(text + "▌")
                    elif event == "tool-call-start":
                        tools.append(data["tool_name"])
                        placeholder.markdown(text + f"\n\n_{TOOL_LABELS.get(data['tool_name'], data['tool_name'])}..._")
                    elif event == "error":
                        st.error(f"⚠️ {data['message']}")
                    elif event == "state":
                        st.session_state.view = data
        except httpx.HTTPError as e:
            st.error(f"Erro ao comunicar com API: {e}")
        placeholder.markdown(text)
    st.rerun()


def turn_payload(settings: dict, **extra) -> dict:
    return {**extra, "settings": settings}


def refresh_view(model: str):
    if st.session_state.conversation_id:
        view = api_json("GET", f"/api/conversations/{st.session_state.conversation_id}", params={"model": model})
        if view is not None:
            st.session_state.view = view


# -----------------------------
# SIDEBAR
# -----------------------------
def settings_sidebar() -> dict:
    """Turn settings picked in the sidebar."""
    st.markdown("## ⚙️ Configurações")

    catalogue = api_json("GET", "/api/models") or {"models": [], "default_model": None}
    model_ids = [m["id"] for m in catalogue["models"]] or [catalogue["default_model"]]
    names = {m["id"]: m["name"] for m in catalogue["models"]}
    default_index = model_ids.index(catalogue["default_model"]) if catalogue["default_model"] in model_ids else 0

    model = st.selectbox("Modelo", model_ids, index=default_index, format_func=lambda m: names.get(m, m))
    temperature = st.slider("Temperature", 0.0, 2.0, 0.4, 0.1)
    top_p = st.slider("Top P", 0.05, 1.0, 1.0, 0.05)
    max_tokens = st.number_input("Max tokens (0 = padrão)", min_value=0, value=0, step=256)

    st.markdown("**Ferramentas**")
    validate_tool = st.toggle("validateLocation", value=True)
    submit_tool = st.toggle("submitQualification", value=True)

    with st.expander("System prompt"):
        system_prompt = st.text_area("Sobrescrever prompt (vazio = padrão)", value="", height=200)

    return {
        "model": model,
        "temperature": temperature,
        "top_p": top_p,
        "max_tokens": int(max_tokens) or None,
        "enable_validate_location_tool": validate_tool,
        "enable_submit_qualification_tool": submit_tool,
        "system_prompt": system_prompt.strip() or None,
    }


def conversation_sidebar(settings: dict):
    st.markdown("## 💬 Conversa")
    conversation_id = st.session_state.conversation_id

    if st.button("🔄 Nova Conversa", use_container_width=True):
        if conversation_id:
            api_json("DELETE", f"/api/conversations/{conversation_id}")
        st.session_state.conversation_id = None
        st.session_state.view = None
        st.rerun()

    if conversation_id:
        st.text_input("ID da Conversa", value=conversation_id, disabled=True)
        col1, col2 = st.columns(2)
        with col1:
            regenerate = st.button("🔁 Regenerar", use_container_width=True)
        with col2:
            if st.button("⏹️ Parar", use_container_width=True):
                api_json("POST", f"/api/conversations/{conversation_id}/stop")
        if regenerate:
            stream_turn("POST", f"/api/conversations/{conversation_id}/regenerate", turn_payload(settings))

    st.markdown("---")
    st.markdown("## 🧪 Cenários")
    scenarios = (api_json("GET", "/api/scenarios") or {}).get("scenarios", [])
    for scenario in scenarios:
        badge = "✅" if scenario["badge"] == "success" else "❌"
        if st.button(f"{badge} {scenario['title']}", help=scenario["description"], use_container_width=True):
            conversation_id = st.session_state.conversation_id or f"conv_{uuid.uuid4().hex[:16]}"
            view = api_json("POST", f"/api/conversations/{conversation_id}/scenarios/{scenario['id']}")
            if view is not None:
                st.session_state.conversation_id = conversation_id
                st.session_state.view = view
                st.rerun()


# -----------------------------
# MESSAGES
# -----------------------------
def render_tool(part: dict):
    label = TOOL_LABELS.get(part["tool_name"], part["tool_name"])
    state = "❌ erro" if part.get("is_error") else part["state"]
    with st.expander(f"{label} · {state}"):
        st.markdown("**Entrada**")
        st.json(part.get("input") or {})
        if part.get("output") is not None:
            st.markdown("**Saída**")
            st.json(part["output"])


def render_message(message: dict, settings: dict):
    conversation_id = st.session_state.conversation_id
    with st.chat_message(message["role"]):
        for part in message["parts"]:
            if part["type"] == "text":
                st.markdown(part["text"])
            else:
                render_tool(part)

        with st.popover("✏️", help="Editar ou apagar"):
            text = "".join(p["text"] for p in message["parts"] if p["type"] == "text")
            new_text = st.text_area("Texto", value=text, key=f"edit_{message['id']}")
            col1, col2 = st.columns(2)
            path = f"/api/conversations/{conversation_id}/messages/{message['id']}"
            with col1:
                save = st.button("Salvar", key=f"save_{message['id']}")
            with col2:
                if st.button("Apagar", key=f"delete_{message['id']}"):
                    view = api_json("DELETE", path)
                    if view is not None:
                        st.session_state.view = view
                        st.rerun()
            if save and new_text.strip():
                if message["role"] == "user":
                    stream_turn("PUT", path, turn_payload(settings, text=new_text))
                else:
                    view = api_json("PUT", path, json={"text": new_text})
                    if view is not None:
                        st.session_state.view = view
                        st.rerun()


def render_location_picker(pending: dict, settings: dict):
    """Address search shown while a requestLocation call awaits the user's pick."""
    with st.container(border=True):
        st.markdown(f"**📍 {(pending.get('output') or {}).get('message') or 'Busque o endereço do terreno'}**")
        query = st.text_input("Endereço", key="places_query", placeholder="Ex: Rua Carlos Sales, Campeche")
        if st.button("Buscar") and query:
            result = api_json("POST", "/api/places/suggest", json={"query": query})
            st.session_state.suggestions = (result or {}).get("suggestions", [])

        suggestions = st.session_state.suggestions
        if not suggestions:
            return
        choice = st.radio(
            "Sugestões",
            suggestions,
            format_func=lambda s: s["full_text"] or s["main_text"],
        )
        if st.button("Selecionar", type="primary"):
            details = api_json("GET", "/api/places/details", params={"place_id": choice["place_id"]})
            if details is None:
                return
            st.session_state.suggestions = []
            selection = {
                "formatted_address": details["formatted_address"] or choice["full_text"],
                "neighborhood": details["neighborhood"],
                "city": details["city"],
                "state": details["state"],
            }
            stream_turn(
                "POST",
                f"/api/conversations/{st.session_state.conversation_id}/location",
                turn_payload(settings, selection=selection),
            )


# -----------------------------
# RESULTS
# -----------------------------
def display_qualification_result(result: dict):
    """Display qualification result in a nice format."""
    st.markdown("### 📋 Resultado da Qualificação")

    col1, col2 = st.columns(2)
    with col1:
        status = "✅ Qualificado" if result["lead_qualified"] else "❌ Desqualificado"
        st.markdown(f"**Status:** {status}")
        st.markdown(f"**Tipo:** {result['owner_type']}")
        st.markdown(f"**Próximo Passo:** {result['next_step']}")
        st.markdown(f"**Bairro:** {result['location']['bairro']} ({result['location']['cidade']})")
    with col2:
        st.markdown(f"**Tamanho:** {result['land_size_m2']:,.0f} m²")
        st.markdown(f"**Valor:** R$ {result['asking_price']:,.2f}")
        st.markdown(f"**Situação Jurídica:** {result['legal_status']}")
        st.markdown(f"**Vista mar:** {'Sim' if result['has_sea_view'] else 'Não'} · "
                    f"**Frente mar:** {'Sim' if result['is_beachfront'] else 'Não'}")

    if result.get("neighborhood_focus"):
        st.info(f"🎯 Foco do bairro: {result['neighborhood_focus']}")

    st.download_button(
        label="📥 Download JSON",
        data=json.dumps(result, indent=2, ensure_ascii=False),
        file_name=f"qualification_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json",
        mime="application/json",
    )


def results_panel(view: Optional[dict]):
    st.markdown("## 📊 Resultados")
    if not view:
        st.caption("Nenhuma conversa ainda.")
        return

    usage, cost = view["usage"], view["cost"]
    col1, col2, col3 = st.columns(3)
    col1.metric("Prompt", usage["prompt"])
    col2.metric("Completion", usage["completion"])
    col3.metric("Total", usage["total"])
    if usage["reasoning"]:
        st.caption(f"Reasoning tokens: {usage['reasoning']}")
    st.metric("Custo estimado (USD)", f"${cost['total_cost']:.6f}")

    location = view.get("location")
    if location:
        st.markdown("### 🗺️ Localização")
        if location.get("allowed"):
            st.success(f"**{location['bairro']}** aprovado · {location['focus']}")
        else:
            st.error(location.get("reason", "Localização rejeitada"))
            if location.get("fallback_link"):
                st.markdown(f"[Ver regiões no mapa]({location['fallback_link']})")

    if view.get("qualification"):
        display_qualification_result(view["qualification"])


def main():
    """Main application."""
    init_session_state()

    st.title("🏖️ Sia - Qualifier Playground")
    st.caption("Agente de Pré-Qualificação de terrenos da Seazone")

    api_healthy = check_api_health()
    if not api_healthy:
        st.error("⚠️ API não está disponível. Inicie o backend primeiro.")
        st.code("uvicorn sia_qualifier.main:app --reload", language="bash")
        return

    with st.sidebar:
        settings = settings_sidebar()
        st.markdown("---")
        conversation_sidebar(settings)

    refresh_view(settings["model"])
    view = st.session_state.view

    chat_col, results_col = st.columns([3, 2])

    with chat_col:
        for message in (view or {}).get("messages", []):
            render_message(message, settings)

        pending = (view or {}).get("pending_location_request")
        if pending:
            render_location_picker(pending, settings)

        user_input = st.chat_input("Ex: Sou corretor e tenho um terreno no Campeche...")
        if user_input:
            with st.chat_message("user"):
                st.markdown(user_input)
            stream_turn(
                "POST",
                "/api/chat",
                turn_payload(settings, message=user_input, conversation_id=st.session_state.conversation_id),
            )

    with results_col:
        results_panel(view)


if __name__ == "__main__":
    main()
