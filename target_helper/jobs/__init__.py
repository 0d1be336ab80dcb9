# Target job lifecycle: models, errors, controller, pipeline, handlers, runner
