"""Localized status messages for `status` events."""

from __future__ import annotations


STATUS_MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "connecting": "Connecting...",
        "searching": "Searching for evidence...",
        "analyzing": "Analyzing claim...",
        "evaluating": "Evaluating integrity...",
        "synthesizing": "Synthesizing findings...",
        "complete": "Analysis complete",
    },
    "es": {
        "connecting": "Conectando...",
        "searching": "Buscando evidencia...",
        "analyzing": "Analizando la afirmación...",
        "evaluating": "Evaluando integridad...",
        "synthesizing": "Sintetizando hallazgos...",
        "complete": "Análisis completo",
    },
    "fr": {
        "connecting": "Connexion...",
        "searching": "Recherche de preuves...",
        "analyzing": "Analyse de l'affirmation...",
        "evaluating": "Évaluation de l'intégrité...",
        "synthesizing": "Synthèse des résultats...",
        "complete": "Analyse terminée",
    },
    "de": {
        "connecting": "Verbindung wird hergestellt...",
        "searching": "Suche nach Beweisen...",
        "analyzing": "Analyse der Behauptung...",
        "evaluating": "Bewertung der Integrität...",
        "synthesizing": "Synthese der Ergebnisse...",
        "complete": "Analyse abgeschlossen",
    },
    "zh": {
        "connecting": "连接中...",
        "searching": "搜索证据...",
        "analyzing": "分析声明...",
        "evaluating": "评估完整性...",
        "synthesizing": "综合结果...",
        "complete": "分析完成",
    },
    "ja": {
        "connecting": "接続中...",
        "searching": "証拠を検索中...",
        "analyzing": "主張を分析中...",
        "evaluating": "整合性を評価中...",
        "synthesizing": "結果を統合中...",
        "complete": "分析完了",
    },
    "ar": {
        "connecting": "...جارٍ الاتصال",
        "searching": "...جارٍ البحث عن الأدلة",
        "analyzing": "...جارٍ تحليل الادعاء",
        "evaluating": "...جارٍ تقييم النزاهة",
        "synthesizing": "...جارٍ تجميع النتائج",
        "complete": "اكتمل التحليل",
    },
    "he": {
        "connecting": "...מתחבר",
        "searching": "...מחפש ראיות",
        "analyzing": "...מנתח את הטענה",
        "evaluating": "...מעריך יושרה",
        "synthesizing": "...מסנתז ממצאים",
        "complete": "הניתוח הושלם",
    },
}


def get_status_message(phase: str, language: str = "en") -> str:
    """Message for `phase` in `language`, else English, else the phase name.

    Region subtags are ignored (`es-MX` resolves to `es`).
    """
    code = (language or "en").replace("_", "-").split("-", 1)[0].lower()
    messages = STATUS_MESSAGES.get(code, STATUS_MESSAGES["en"])
    return messages.get(phase) or STATUS_MESSAGES["en"].get(phase) or phase
