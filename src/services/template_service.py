"""
Template Service
Looks up stored templates and substitutes {{placeholders}}.
"""
from typing import Optional, Dict, Any

# Utils
from utils.log_utils import LogUtil

# Database
from database.campaign_db import CampaignDB

# Exceptions
from exceptions.campaign_exception import NotFoundException

# Models
from models.template_data import TemplateData


class TemplateService:
    def __init__(self, log_util: LogUtil, campaign_db: CampaignDB):
        self.log_util = log_util
        self.campaign_db = campaign_db

    async def render(self, template_id: str, project_id: str) -> TemplateData:
        template = await self.campaign_db.get_template(project_id, template_id)
        if template is None:
            self.log_util.error(service_name="TemplateService", message=f"Template {template_id} not found in project {project_id}")
            raise NotFoundException(message=f"Template {template_id} not found")
        return template

    @staticmethod
    def resolve_value(value: str, execution_variables: Dict[str, Any]) -> str:
        """
        A configured value of the exact form {{name}} is looked up in the
        execution variables, one level deep. Unknown names keep the literal.
        """
        if value.startswith("{{") and value.endswith("}}"):
            resolved = execution_variables.get(value[2:-2].strip())
            if resolved is not None and resolved != "":
                return str(resolved)
        return value

    def substitute(self, content: str, config_variables: Optional[Dict[str, str]], execution_variables: Dict[str, Any]) -> str:
        if not config_variables:
            return content
        for name, value in config_variables.items():
            resolved = self.resolve_value(str(value), execution_variables)
            content = content.replace("{{" + name + "}}", resolved)
        return content
