import jinja2
import yaml

from . import resources


class Loader:
    """
    Class for returning objects created by rendering YAML templates from this package.
    """
    def __init__(self, **globals):
        # Create the package loader for the parent module of this one
        loader = jinja2.PackageLoader(self.__module__.rsplit(".", maxsplit = 1)[0])
        self.env = jinja2.Environment(
            loader = loader,
            autoescape = False,
            undefined = jinja2.StrictUndefined
        )
        self.env.globals.update(globals)

    def load(self, template, **params):
        """
        Render the specified template with the given params, load the result as
        YAML and return it.
        """
        return yaml.safe_load(self.env.get_template(template).render(**params))


default_loader = Loader(names = resources)
