# /chatflow/workflows/nodes/crm.py

from typing import Any, Dict

from chatflow.models.flow import FlowNode
from chatflow.utils.errors import FlowValidationError
from chatflow.workflows.catalog import NodeContext, NodeHandler
from chatflow.workflows.results import Advance, NodeResult


def _properties(node: FlowNode, ctx: NodeContext) -> Dict[str, Any]:
    if node.data.get("properties"):
        return {key: ctx.render_value(value) for key, value in node.data["properties"].items()}
    return {ctx.require("property"): ctx.render_value(node.data.get("value"))}


class ContactPropertyHandler(NodeHandler):
    node_types = ("contact_property",)
    side_effecting = True

    async def execute(self, node: FlowNode, ctx: NodeContext) -> NodeResult:
        properties = _properties(node, ctx)
        if not ctx.effect_already_done:
            if ctx.services.crm is None:
                raise FlowValidationError("contact_property nodes require a CRM gateway")
            await ctx.services.crm.update_contact_properties(ctx.session.tenant_id, ctx.session.contact_id, properties)
        return Advance(ctx.default_successor(), contact_updates=properties, output={"properties": sorted(properties)})


class PipelineStageHandler(NodeHandler):
    node_types = ("update_pipeline_stage",)
    side_effecting = True

    async def execute(self, node: FlowNode, ctx: NodeContext) -> NodeResult:
        stage_id = ctx.render(str(ctx.require("stage_id")))
        pipeline_id = node.data.get("pipeline_id")
        if not ctx.effect_already_done:
            if ctx.services.crm is None:
                raise FlowValidationError("update_pipeline_stage nodes require a CRM gateway")
            await ctx.services.crm.update_pipeline_stage(ctx.session.tenant_id, ctx.session.contact_id, pipeline_id, stage_id)
        return Advance(ctx.default_successor(), output={"pipeline_id": pipeline_id, "stage_id": stage_id})


HANDLERS = [
    ContactPropertyHandler(),
    PipelineStageHandler(),
]
