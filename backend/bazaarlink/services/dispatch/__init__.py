from bazaarlink.services.dispatch.matcher import AgentMatch, assert_within_radius, eligible_agents

__all__ = ["AgentMatch", "assert_within_radius", "eligible_agents"]
