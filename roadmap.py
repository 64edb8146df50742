"""
Financial roadmap: a summary, six scores, suggestions, steps and a 7-day
task calendar generated by the language model.

Model output is recovered with json-repair (truncated replies are closed,
markdown fences removed) and then validated against the Roadmap schema.
A reply that does not validate is replaced by one fallback roadmap built
from the user's form; only a bad calendar is replaced on its own.
"""
import logging
import re
from typing import List, Optional

from json_repair import repair_json
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator
from sqlalchemy.orm import Session

import ai
from models import CalendarData, utcnow

logger = logging.getLogger(__name__)

SCORE_NAMES = ["Readiness", "Growth", "Diversification", "Risk Management", "Opportunity", "Stability"]

DEFAULT_DAYS = [
    ("Set Financial Goals", "Define your top 3 financial priorities", "Target"),
    ("Track Your Spending", "Start tracking all daily expenses", "Calculator"),
    ("Review Credit Score", "Check your credit report for accuracy", "Shield"),
    ("Research Investment Options", "Research investment vehicles that match your risk tolerance", "DollarSign"),
    ("Create Budget Plan", "Create a monthly budget based on your income and goals", "Calculator"),
    ("Emergency Fund Setup", "Set up automatic savings for emergency fund", "Shield"),
    ("Weekly Review", "Review progress and adjust your financial plan", "Zap"),
]

SYSTEM_PROMPT = """You are a hyper-specific financial advisor. Create ultra-actionable, concrete tasks that require
ZERO additional research from the user: exact steps, specific websites, specific tools.

NEVER recommend specific investment amounts, specific stocks or specific investment products. Focus on
education, budgeting tools, savings strategies and general financial planning.

Return ONLY a JSON object with exactly these fields:
{
  "summary": "4-5 sentence action-oriented summary",
  "scores": {"Readiness": 0-10, "Growth": 0-10, "Diversification": 0-10,
             "Risk Management": 0-10, "Opportunity": 0-10, "Stability": 0-10},
  "suggestions": ["specific suggestion", "..."],
  "steps": [{"title": "...", "desc": "...", "type": "Action|Education|Review",
             "status": "unlocked", "estimatedTime": "X mins"}],
  "calendar": [{"day": 1, "tasks": [{"id": "task-1-1", "title": "...", "description": "...",
                "type": "action|education|review", "icon": "Target|Calculator|Shield|DollarSign|Zap",
                "estimated_time": "X min", "completed": false}]}]
}
Create exactly 7 days with 1-2 different tasks each. Scores are integers; most users score between 5 and 8."""


# ---------------------------
# Schema
# ---------------------------

class Task(BaseModel):
    id: str = ""
    title: str
    description: str = ""
    type: str = "action"
    icon: str = "Target"
    estimated_time: str = "30 min"
    completed: bool = False


class CalendarDay(BaseModel):
    day: Optional[int] = None
    date: Optional[str] = None
    tasks: List[Task] = Field(min_length=1)


class Step(BaseModel):
    title: str
    desc: str = ""
    type: str = "Action"
    status: str = "unlocked"
    estimatedTime: str = "30 mins"


class Roadmap(BaseModel):
    summary: str = Field(min_length=1)
    scores: dict
    suggestions: List[str] = Field(default_factory=list)
    steps: List[Step] = Field(default_factory=list)
    calendar: List[CalendarDay] = Field(default_factory=list)

    @field_validator("scores")
    @classmethod
    def check_scores(cls, value):
        missing = [name for name in SCORE_NAMES if name not in value]
        if missing:
            raise ValueError(f"missing scores: {', '.join(missing)}")
        clean = {}
        for name in SCORE_NAMES:
            try:
                score = float(value[name])
            except (TypeError, ValueError):
                raise ValueError(f"score {name} is not a number")
            clean[name] = int(round(min(10.0, max(0.0, score))))
        return clean


_calendar_adapter = TypeAdapter(List[CalendarDay])


# ---------------------------
# Defaults
# ---------------------------

def default_calendar(prefix="fallback-task"):
    days = []
    for i, (title, description, icon) in enumerate(DEFAULT_DAYS):
        day = i + 1
        days.append(
            CalendarDay(
                day=day,
                tasks=[
                    Task(
                        id=f"{prefix}-{day}-1",
                        title=title,
                        description=description,
                        type="review" if day == 7 else "action" if day <= 3 else "education",
                        icon=icon,
                        estimated_time="30 min",
                    )
                ],
            )
        )
    return days


def fallback_roadmap(form: dict) -> Roadmap:
    goals = form.get("goals") or []
    risk = form.get("risk")
    return Roadmap(
        summary=(
            "Your financial roadmap is ready! Based on your profile, we've created a personalized "
            f"action plan to help you achieve your goals: {', '.join(goals)}."
        ),
        scores={
            "Readiness": 7,
            "Growth": 6,
            "Diversification": 5,
            "Risk Management": 6 if risk == "High" else 7 if risk == "Medium" else 8,
            "Opportunity": 7,
            "Stability": 7,
        },
        suggestions=[
            "Start with small, achievable daily actions",
            "Focus on your priority goals first",
            "Track your progress weekly",
        ],
        steps=[
            Step(title="Set Clear Goals", desc="Define specific financial objectives", estimatedTime="30 mins"),
            Step(title="Create Budget", desc="Track income and expenses", estimatedTime="45 mins"),
            Step(title="Build Emergency Fund", desc="Save 3-6 months of expenses", estimatedTime="60 mins"),
        ],
        calendar=default_calendar(prefix="backup-task"),
    )


# ---------------------------
# Parsing
# ---------------------------

def strip_fences(text: str) -> str:
    return re.sub(r"```(?:json)?", "", text or "").strip()


def recover_object(text: str):
    """Best-effort JSON object from model output; None when nothing usable."""
    cleaned = strip_fences(text)
    if not cleaned:
        return None
    obj = repair_json(cleaned, return_objects=True)
    return obj if isinstance(obj, dict) else None


def _normalize_calendar(days):
    for i, day in enumerate(days):
        if day.day is None:
            day.day = i + 1
        for j, task in enumerate(day.tasks):
            if not task.id:
                task.id = f"task-{day.day}-{j + 1}"
    return days


def parse_roadmap(text: str, form: dict) -> Roadmap:
    obj = recover_object(text)
    if obj is None:
        logger.warning("Roadmap reply was not a JSON object, using fallback")
        return fallback_roadmap(form)

    raw_calendar = obj.pop("calendar", None)
    try:
        roadmap = Roadmap.model_validate(obj)
    except ValidationError as e:
        logger.warning("Roadmap reply failed validation, using fallback: %s", e.errors()[:3])
        return fallback_roadmap(form)

    try:
        days = _calendar_adapter.validate_python(raw_calendar)
        if not days:
            raise ValueError("empty calendar")
        roadmap.calendar = _normalize_calendar(days)
    except (ValidationError, ValueError):
        logger.info("Generating fallback calendar")
        roadmap.calendar = default_calendar()

    return roadmap


# ---------------------------
# Generation
# ---------------------------

def validate_form(form: dict) -> dict:
    goals = form.get("goals")
    if not isinstance(goals, list) or not goals:
        raise ValueError("At least one goal is required")
    return {
        "age": form.get("age"),
        "family": form.get("family") or form.get("familyStatus"),
        "income": form.get("income"),
        "goals": [str(g) for g in goals],
        "risk": form.get("risk") or form.get("riskTolerance"),
        "goalDescription": form.get("goalDescription") or form.get("mentalStatus") or "",
    }


def build_user_prompt(form: dict) -> str:
    lines = [
        "Create a financial roadmap for:",
        f"- Age: {form['age']}",
        f"- Family: {form['family']}",
        f"- Income: ${form['income']}",
        f"- Goals: {', '.join(form['goals'])}",
        f"- Risk tolerance: {form['risk']}",
    ]
    if form.get("goalDescription"):
        lines.append(f"- Additional details: {form['goalDescription']}")
    lines += ["", "Focus on actionable steps and create a 7-day calendar with specific daily tasks."]
    return "\n".join(lines)


def generate_roadmap(form: dict) -> Roadmap:
    form = validate_form(form)
    text = ai.chat_completion(
        [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_user_prompt(form)},
        ],
        max_tokens=2000,
        temperature=0.7,
    )
    return parse_roadmap(text, form)


# ---------------------------
# Save / load
# ---------------------------

def save_calendar(session: Session, user_id: int, form_data=None, result_data=None,
                  event_statuses=None, custom_events=None) -> CalendarData:
    row = session.query(CalendarData).filter_by(user_id=user_id).first()
    if row is None:
        row = CalendarData(user_id=user_id)
        session.add(row)

    row.calendar_form = form_data
    row.task_statuses = {
        "event_statuses": event_statuses or {},
        "custom_events": custom_events or {},
        "calendar_result": result_data,
    }
    row.updated_at = utcnow()
    session.commit()
    return row


def load_calendar(session: Session, user_id: int):
    row = session.query(CalendarData).filter_by(user_id=user_id).first()
    return row.to_dict() if row else None
