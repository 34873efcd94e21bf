import re
import collections

# naming of a distro family in SCAP content, {major} gets the version
Product = collections.namedtuple('Product', ['short', 'human', 'full'])

PRODUCTS = {
    'rhel': Product('rhel{major}', 'RHEL {major}', 'Red Hat Enterprise Linux {major}'),
    'centos': Product('centos{major}', 'CentOS {major}', 'CentOS Stream {major}'),
    'fedora': Product('fedora{major}', 'Fedora {major}', 'Fedora Linux {major}'),
    'almalinux': Product('almalinux{major}', 'AlmaLinux {major}', 'AlmaLinux OS {major}'),
    'rocky': Product('rocky{major}', 'Rocky {major}', 'Rocky Linux {major}'),
    'ol': Product('ol{major}', 'OL {major}', 'Oracle Linux {major}'),
}


class OSIdentity(collections.namedtuple('OSIdentity', ['distro', 'major'])):
    """
    A (distro family, major version) pair, ie. OSIdentity('centos', 10).

    Used purely as a lookup and substitution key, never mutated.
    """

    @classmethod
    def parse(cls, text):
        """
        Parse 'centos10', 'rhel-9', 'RHEL 9' or ('rhel', 9) style input.
        """
        if isinstance(text, (tuple, list)):
            distro, major = text
            return cls(str(distro).lower(), int(major))
        match = re.fullmatch(r'([A-Za-z]+?)[-_ ]?([0-9]+)(\.[0-9]+)?', str(text).strip())
        if not match:
            raise ValueError(f"not an OS identity: {text!r}")
        distro, major, _ = match.groups()
        return cls(distro.lower(), int(major))

    @classmethod
    def from_os_release(cls, path='/etc/os-release'):
        """
        Return the identity of the running system, as read from os-release(5).
        """
        os_release = {}
        with open(path) as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#') or '=' not in line:
                    continue
                key, value = line.split('=', 1)
                os_release[key] = value.strip('"\'')
        major = os_release['VERSION_ID'].partition('.')[0]
        return cls(os_release['ID'], int(major))

    def product(self, products=None):
        products = PRODUCTS if products is None else products
        try:
            return products[self.distro]
        except KeyError:
            raise ValueError(f"unknown distro family '{self.distro}'") from None

    def markers(self, products=None):
        """
        Return the (short, human, full) strings encoding this identity in
        SCAP content, ie. ('rhel10', 'RHEL 10', 'Red Hat Enterprise Linux 10').
        """
        return tuple(form.format(major=self.major) for form in self.product(products))

    def __str__(self):
        return f'{self.distro}{self.major}'
