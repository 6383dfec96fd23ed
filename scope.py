from collections.abc import MutableMapping


class Scope(MutableMapping):
    """Per-request variables with fallback to a parent mapping.

    Reads fall back to the parent chain, writes and deletes only touch this
    scope unless ``set_variable`` is asked to target an ancestor.
    """

    def __init__(self, values=None, parent=None):
        self.parent = parent
        self._vars = dict(values or {})

    def __getitem__(self, name):
        if name in self._vars:
            return self._vars[name]
        if self.parent is not None:
            return self.parent[name]
        raise KeyError(name)

    def __setitem__(self, name, value):
        self._vars[name] = value

    def __delitem__(self, name):
        del self._vars[name]

    def __iter__(self):
        seen = set()
        for name in self._vars:
            seen.add(name)
            yield name
        if self.parent is not None:
            for name in self.parent.keys():
                if name not in seen:
                    seen.add(name)
                    yield name

    def __len__(self):
        return sum(1 for _ in self)

    def __contains__(self, name):
        if name in self._vars:
            return True
        return self.parent is not None and name in self.parent

    def __repr__(self):
        return f'Scope({self._vars!r}, parent={type(self.parent).__name__})'

    def is_local(self, name):
        return name in self._vars

    def local(self, name, default=None):
        return self._vars.get(name, default)

    def child(self, values=None):
        return Scope(values, parent=self)

    @property
    def root(self):
        scope = self
        while isinstance(scope.parent, Scope):
            scope = scope.parent
        return scope

    def set_variable(self, name, value, target='local'):
        if target == 'local':
            scope = self
        elif target == 'parent':
            if not isinstance(self.parent, Scope):
                raise ValueError(f'scope has no writable parent for {name!r}')
            scope = self.parent
        elif target == 'root':
            scope = self.root
        else:
            raise ValueError(f'unknown scope target: {target!r}')
        scope[name] = value
