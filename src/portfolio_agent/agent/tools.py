import asyncio
from typing import Any, Dict, List, Mapping, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..models import ResultEnvelope, ToolDescriptor
from ..services.portfolio_store import PortfolioStore
from .registry import Capability, ToolRegistry

MIN_REQUIREMENTS_LENGTH = 20
LONG_REQUIREMENTS_LENGTH = 100

PROPOSAL_INDICATORS = (
    "estimate",
    "quote",
    "cost",
    "price",
    "budget",
    "timeline",
    "hire",
    "project",
    "build",
    "develop",
)

AVAILABILITY_MESSAGES = {
    "available": "{name} is currently available for freelance projects.",
    "limited": (
        "{name} is available for part-time freelance work while maintaining "
        "a full-time position."
    ),
    "unavailable": "{name} is currently not available for new projects.",
}

BLOG_COMING_SOON = "Blog feature is coming soon. Currently no blog posts are available."


class SearchProjectsInput(BaseModel):
    query: str | None = None
    technologies: List[str] | None = None


class GetProjectDetailsInput(BaseModel):
    projectId: str


class SearchBlogPostsInput(BaseModel):
    topic: str


class SuggestProposalInput(BaseModel):
    requirements: str


M = TypeVar("M", bound=BaseModel)


def _parse(model: Type[M], payload: Mapping[str, Any]) -> M | ResultEnvelope:
    """Validate tool input; on failure return the envelope to hand back to the model."""
    try:
        return model.model_validate(dict(payload))
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}"
            for err in e.errors()
        )
        return ResultEnvelope.fail(f"Invalid input: {problems}")


TOOL_DESCRIPTORS: Dict[str, ToolDescriptor] = {
    "searchProjects": ToolDescriptor(
        name="searchProjects",
        description=(
            "Search portfolio projects by query text or filter by technologies. "
            "Returns relevant projects with their details."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Search query for project title or description",
                },
                "technologies": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": 'Technology names to filter by (e.g. ["React", "TypeScript"])',
                },
            },
        },
    ),
    "getProjectDetails": ToolDescriptor(
        name="getProjectDetails",
        description=(
            "Retrieve full details of a specific project by its ID or slug, including "
            "long description, GitHub stats, and dates."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "projectId": {
                    "type": "string",
                    "description": "The ID or slug of the project to retrieve",
                },
            },
            "required": ["projectId"],
        },
    ),
    "searchBlogPosts": ToolDescriptor(
        name="searchBlogPosts",
        description=(
            "Search for blog posts by topic or keyword. Returns relevant blog posts "
            "with their titles, excerpts, and tags."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "topic": {
                    "type": "string",
                    "description": "Topic or keyword to search for in blog posts",
                },
            },
            "required": ["topic"],
        },
    ),
    "checkAvailability": ToolDescriptor(
        name="checkAvailability",
        description=(
            "Get current freelance availability status for Rodrigo. Returns availability "
            "status (available/limited/unavailable) and hourly rate if applicable."
        ),
        input_schema={"type": "object", "properties": {}},
    ),
    "suggestProposal": ToolDescriptor(
        name="suggestProposal",
        description=(
            "Analyze project requirements and recommend whether to generate a formal "
            "proposal. Use this when users discuss potential projects or ask about "
            "costs/timelines."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "requirements": {
                    "type": "string",
                    "description": "Project requirements and description from the user",
                },
            },
            "required": ["requirements"],
        },
    ),
}


class PortfolioTools:
    """The portfolio capabilities exposed to the assistant."""

    def __init__(self, store: PortfolioStore) -> None:
        self._store = store

    async def search_projects(self, payload: Mapping[str, Any]) -> ResultEnvelope:
        params = _parse(SearchProjectsInput, payload)
        if isinstance(params, ResultEnvelope):
            return params
        projects = await asyncio.to_thread(
            self._store.search_projects, params.query, params.technologies
        )
        return ResultEnvelope.ok({"projects": projects, "count": len(projects)})

    async def get_project_details(self, payload: Mapping[str, Any]) -> ResultEnvelope:
        params = _parse(GetProjectDetailsInput, payload)
        if isinstance(params, ResultEnvelope):
            return params
        project = await asyncio.to_thread(self._store.get_project, params.projectId)
        if project is None:
            return ResultEnvelope.fail("Project not found")
        return ResultEnvelope.ok({"project": project})

    async def search_blog_posts(self, payload: Mapping[str, Any]) -> ResultEnvelope:
        params = _parse(SearchBlogPostsInput, payload)
        if isinstance(params, ResultEnvelope):
            return params
        # No blog content yet; answer with an explicit empty result.
        return ResultEnvelope.ok({"posts": [], "count": 0, "message": BLOG_COMING_SOON})

    async def check_availability(self, payload: Mapping[str, Any]) -> ResultEnvelope:
        profile = await asyncio.to_thread(self._store.get_profile)
        if profile is None:
            return ResultEnvelope.fail("Profile not found")
        availability = profile["availability"]
        template = AVAILABILITY_MESSAGES.get(availability)
        rate = profile.get("hourly_rate")
        return ResultEnvelope.ok(
            {
                "availability": availability,
                "hourlyRate": float(rate) if rate is not None else None,
                "message": (
                    template.format(name=profile["full_name"])
                    if template
                    else "Availability status unknown"
                ),
            }
        )

    async def suggest_proposal(self, payload: Mapping[str, Any]) -> ResultEnvelope:
        params = _parse(SuggestProposalInput, payload)
        if isinstance(params, ResultEnvelope):
            return params
        requirements = params.requirements
        if len(requirements.strip()) < MIN_REQUIREMENTS_LENGTH:
            return ResultEnvelope.fail(
                "Please provide more detailed project requirements "
                f"(at least {MIN_REQUIREMENTS_LENGTH} characters)",
                data={"shouldGenerateProposal": False},
            )

        lowered = requirements.lower()
        has_indicators = any(word in lowered for word in PROPOSAL_INDICATORS)
        return ResultEnvelope.ok(
            {
                "shouldGenerateProposal": has_indicators
                or len(requirements) > LONG_REQUIREMENTS_LENGTH,
                "message": (
                    "Based on your requirements, I recommend generating a detailed "
                    "proposal. This would include project scope, timeline, and cost "
                    "estimates tailored to your needs."
                    if has_indicators
                    else "I can help generate a detailed proposal for your project. "
                    "Would you like me to create one with scope, timeline, and cost "
                    "estimates?"
                ),
                "nextSteps": [
                    "Confirm project scope and requirements",
                    "Review similar past projects",
                    "Generate detailed proposal with timeline",
                    "Provide cost estimate and payment terms",
                ],
            }
        )


def build_portfolio_registry(store: PortfolioStore) -> ToolRegistry:
    """Registry of the five portfolio tools, in the order they are advertised."""
    tools = PortfolioTools(store)
    handlers = {
        "searchProjects": tools.search_projects,
        "getProjectDetails": tools.get_project_details,
        "searchBlogPosts": tools.search_blog_posts,
        "checkAvailability": tools.check_availability,
        "suggestProposal": tools.suggest_proposal,
    }
    return ToolRegistry(
        Capability(descriptor=TOOL_DESCRIPTORS[name], handler=handler)
        for name, handler in handlers.items()
    )
