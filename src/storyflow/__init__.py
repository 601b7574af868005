"""StoryFlow: verb-based process stories compiled to IR, BPMN 2.0 and simulation traces."""

__version__ = "0.1.0"
